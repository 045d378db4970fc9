# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Parsing and type validation of the NMS configuration fields.

The host hands over a flat key/value set using the wire names below. Parsing only checks
presence and types; value ranges are checked once shapes are bound (see `detnms.planner`).
"""

import enum
import logging
from collections.abc import Mapping
from typing import Any, Final

import numpy as np

from detnms.errors import ConfigMissingField, ConfigTypeMismatch
from detnms.state import DEFAULT_SCORE_BITS, EngineState, NMSConfig

logger = logging.getLogger(__name__)

_INT32_MIN: Final = -(2**31)
_INT32_MAX: Final = 2**31 - 1


class FieldType(enum.Enum):
    """Wire type of a configuration field."""

    BOOL = enum.auto()
    INT32 = enum.auto()
    FLOAT32 = enum.auto()


# Wire name -> (attribute name, wire type)
NMS_CONFIG_FIELDS: Final[dict[str, tuple[str, FieldType]]] = {
    "shareLocation": ("share_location", FieldType.BOOL),
    "backgroundLabelId": ("background_label_id", FieldType.INT32),
    "numClasses": ("num_classes", FieldType.INT32),
    "topK": ("top_k", FieldType.INT32),
    "keepTopK": ("keep_top_k", FieldType.INT32),
    "scoreThreshold": ("score_threshold", FieldType.FLOAT32),
    "iouThreshold": ("iou_threshold", FieldType.FLOAT32),
    "isNormalized": ("is_normalized", FieldType.BOOL),
}

ENGINE_OPTION_FIELDS: Final[dict[str, tuple[str, FieldType]]] = {
    "clipBoxes": ("clip_boxes", FieldType.BOOL),
    "scoreBits": ("score_bits", FieldType.INT32),
}

ENGINE_OPTION_DEFAULTS: Final[dict[str, Any]] = {
    "clipBoxes": True,
    "scoreBits": DEFAULT_SCORE_BITS,
}


def _convert_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool | np.bool_):
        return bool(value)

    # Flags travel as int32 0/1 on the host side
    if isinstance(value, int | np.integer) and int(value) in (0, 1):
        return bool(value)

    msg = f"Field {name!r} expects a bool, got {type(value).__name__} ({value!r})"
    raise ConfigTypeMismatch(msg)


def _convert_int32(name: str, value: Any) -> int:
    if isinstance(value, bool | np.bool_) or not isinstance(value, int | np.integer):
        msg = f"Field {name!r} expects an int32, got {type(value).__name__} ({value!r})"
        raise ConfigTypeMismatch(msg)

    if not _INT32_MIN <= int(value) <= _INT32_MAX:
        msg = f"Field {name!r} does not fit in an int32 ({value = })"
        raise ConfigTypeMismatch(msg)

    return int(value)


def _convert_float32(name: str, value: Any) -> float:
    if not isinstance(value, float | np.floating):
        msg = f"Field {name!r} expects a float32, got {type(value).__name__} ({value!r})"
        raise ConfigTypeMismatch(msg)

    return float(np.float32(value))


_CONVERTERS: Final = {
    FieldType.BOOL: _convert_bool,
    FieldType.INT32: _convert_int32,
    FieldType.FLOAT32: _convert_float32,
}


def _parse_fields(
    fields: Mapping[str, Any],
    schema: Mapping[str, tuple[str, FieldType]],
    defaults: Mapping[str, Any],
) -> dict[str, Any]:
    parsed: dict[str, Any] = {}
    for wire_name, (attribute, field_type) in schema.items():
        if wire_name in fields:
            parsed[attribute] = _CONVERTERS[field_type](wire_name, fields[wire_name])
        elif wire_name in defaults:
            parsed[attribute] = defaults[wire_name]
        else:
            msg = f"Missing required NMS configuration field {wire_name!r}"
            raise ConfigMissingField(msg)

    return parsed


def parse_nms_config(fields: Mapping[str, Any]) -> NMSConfig:
    """Build an `NMSConfig` from host configuration fields.

    Args:
        fields: Mapping of wire field name to value, see `NMS_CONFIG_FIELDS`.

    Returns:
        The parsed configuration.

    Raises:
        ConfigMissingField: if a required field is absent.
        ConfigTypeMismatch: if a field has the wrong type.
    """
    return NMSConfig(**_parse_fields(fields, NMS_CONFIG_FIELDS, {}))


def parse_engine_state(fields: Mapping[str, Any]) -> EngineState:
    """Build a fresh (shape-unbound) `EngineState` from host configuration fields.

    `clipBoxes` defaults to True and `scoreBits` to 16. Unknown keys are ignored.
    """
    unknown = sorted(set(fields) - set(NMS_CONFIG_FIELDS) - set(ENGINE_OPTION_FIELDS))
    if unknown:
        logger.debug("Ignoring unknown NMS configuration fields: %s", unknown)

    config = parse_nms_config(fields)
    options = _parse_fields(fields, ENGINE_OPTION_FIELDS, ENGINE_OPTION_DEFAULTS)
    return EngineState(config=config, **options)
