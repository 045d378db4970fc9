# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Test parsing of the NMS configuration fields."""

import logging
from typing import Any, Final

import numpy as np
import pytest

from detnms.config import NMS_CONFIG_FIELDS, parse_engine_state, parse_nms_config
from detnms.errors import ConfigError, ConfigMissingField, ConfigTypeMismatch
from detnms.state import DEFAULT_SCORE_BITS, Precision

_BASE_FIELDS: Final[dict[str, Any]] = {
    "shareLocation": True,
    "backgroundLabelId": -1,
    "numClasses": 3,
    "topK": 100,
    "keepTopK": 50,
    "scoreThreshold": 0.25,
    "iouThreshold": 0.5,
    "isNormalized": True,
}


def test_parse_nms_config() -> None:
    """Test that every field lands on its attribute."""
    config = parse_nms_config(_BASE_FIELDS)

    assert config.share_location is True
    assert config.background_label_id == -1
    assert config.num_classes == 3  # noqa: PLR2004
    assert config.top_k == 100  # noqa: PLR2004
    assert config.keep_top_k == 50  # noqa: PLR2004
    assert config.score_threshold == 0.25  # noqa: PLR2004
    assert config.iou_threshold == 0.5  # noqa: PLR2004
    assert config.is_normalized is True
    assert config.num_loc_classes == 1


def test_parse_engine_state_defaults() -> None:
    """Test that optional fields fall back to their defaults and the shape starts unbound."""
    state = parse_engine_state(_BASE_FIELDS)

    assert state.clip_boxes is True
    assert state.score_bits == DEFAULT_SCORE_BITS
    assert state.precision == Precision.FLOAT
    assert not state.runtime_shape.is_bound


def test_parse_engine_state_options() -> None:
    """Test that optional fields are honored when given."""
    state = parse_engine_state(_BASE_FIELDS | {"clipBoxes": 0, "scoreBits": np.int32(8)})

    assert state.clip_boxes is False
    assert state.score_bits == 8  # noqa: PLR2004


def test_thresholds_are_rounded_to_float32() -> None:
    """Test that thresholds hold float32 values."""
    config = parse_nms_config(_BASE_FIELDS | {"scoreThreshold": 0.1, "iouThreshold": np.float32(0.7)})

    assert config.score_threshold == float(np.float32(0.1))
    assert config.iou_threshold == float(np.float32(0.7))


@pytest.mark.parametrize("missing", list(NMS_CONFIG_FIELDS))
def test_missing_field(missing: str) -> None:
    """Test that each required field is required."""
    fields = {name: value for name, value in _BASE_FIELDS.items() if name != missing}

    with pytest.raises(ConfigMissingField, match=missing):
        parse_engine_state(fields)


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("shareLocation", "yes"),
        ("shareLocation", 2),
        ("shareLocation", 1.0),
        ("numClasses", 3.0),
        ("numClasses", True),
        ("topK", "100"),
        ("keepTopK", 2**31),
        ("scoreThreshold", 1),
        ("iouThreshold", "0.5"),
        ("isNormalized", None),
        ("clipBoxes", 0.0),
        ("scoreBits", 16.0),
    ],
)
def test_type_mismatch(name: str, value: Any) -> None:
    """Test that wrongly typed fields are rejected."""
    with pytest.raises(ConfigTypeMismatch, match=name):
        parse_engine_state(_BASE_FIELDS | {name: value})


def test_errors_are_config_errors() -> None:
    """Test that both parse failures can be caught as ConfigError (and ValueError)."""
    with pytest.raises(ConfigError):
        parse_nms_config({})

    with pytest.raises(ValueError):  # noqa: PT011
        parse_nms_config(_BASE_FIELDS | {"topK": None})


def test_numpy_scalars_are_accepted() -> None:
    """Test that NumPy scalars are accepted like their Python counterparts."""
    config = parse_nms_config(
        _BASE_FIELDS
        | {
            "shareLocation": np.bool_(False),
            "numClasses": np.int64(4),
            "scoreThreshold": np.float64(0.5),
        }
    )

    assert config.share_location is False
    assert config.num_classes == 4  # noqa: PLR2004
    assert config.num_loc_classes == 4  # noqa: PLR2004


def test_no_range_checks_while_parsing() -> None:
    """Test that out-of-range values parse; they are rejected when shapes are bound."""
    config = parse_nms_config(_BASE_FIELDS | {"numClasses": 0, "topK": -5, "iouThreshold": 2.0})

    assert config.num_classes == 0
    assert config.top_k == -5  # noqa: PLR2004


def test_unknown_fields_are_ignored(caplog: pytest.LogCaptureFixture) -> None:
    """Test that unknown fields are ignored and reported at debug level."""
    with caplog.at_level(logging.DEBUG, logger="detnms.config"):
        state = parse_engine_state(_BASE_FIELDS | {"plugin_version": "1", "extra": 3})

    assert state.config == parse_nms_config(_BASE_FIELDS)
    assert "plugin_version" in caplog.text
