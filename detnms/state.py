# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Engine state: NMS configuration, bound runtime shape, and working precision."""

import dataclasses
import enum
from dataclasses import dataclass, field
from typing import Final

import numpy as np
import torch

# Marker for runtime-shape values that are not bound (or symbolic)
UNBOUND: Final = -1

DEFAULT_SCORE_BITS: Final = 16


def to_float32(value: float) -> float:
    """Round a Python float to the nearest float32 value."""
    return float(np.float32(value))


@dataclass(frozen=True)
class NMSConfig:
    """User-facing NMS parameters, immutable once an engine is constructed."""

    share_location: bool
    background_label_id: int
    num_classes: int
    top_k: int
    keep_top_k: int
    score_threshold: float
    iou_threshold: float
    is_normalized: bool

    def __post_init__(self) -> None:
        # Thresholds live as float32 on the wire, keep them representable
        object.__setattr__(self, "score_threshold", to_float32(self.score_threshold))
        object.__setattr__(self, "iou_threshold", to_float32(self.iou_threshold))

    @property
    def num_loc_classes(self) -> int:
        """Number of box geometries per prior."""
        return 1 if self.share_location else self.num_classes


class Precision(enum.IntEnum):
    """Working precision of boxes and scores. Values are the serialized codes."""

    FLOAT = 0
    HALF = 1

    @property
    def torch_dtype(self) -> torch.dtype:
        return _TORCH_DTYPES[self]

    @property
    def itemsize(self) -> int:
        return self.torch_dtype.itemsize

    @property
    def mantissa_bits(self) -> int:
        """Number of explicitly stored mantissa bits."""
        return _MANTISSA_BITS[self]

    @classmethod
    def from_dtype(cls, dtype: torch.dtype) -> "Precision":
        for precision, torch_dtype in _TORCH_DTYPES.items():
            if torch_dtype == dtype:
                return precision
        msg = f"Unsupported dtype {dtype}, expected one of {list(_TORCH_DTYPES.values())}"
        raise ValueError(msg)


_TORCH_DTYPES: Final = {
    Precision.FLOAT: torch.float32,
    Precision.HALF: torch.float16,
}

_MANTISSA_BITS: Final = {
    Precision.FLOAT: 23,
    Precision.HALF: 10,
}


@dataclass
class RuntimeShape:
    """Per-item sizes derived from the bound input shapes."""

    boxes_size: int = UNBOUND
    scores_size: int = UNBOUND
    num_priors: int = UNBOUND

    @property
    def is_bound(self) -> bool:
        return self.boxes_size >= 0 and self.scores_size >= 0 and self.num_priors >= 0


@dataclass
class EngineState:
    """Complete state of an engine instance."""

    config: NMSConfig
    runtime_shape: RuntimeShape = field(default_factory=RuntimeShape)
    clip_boxes: bool = True
    precision: Precision = Precision.FLOAT
    score_bits: int = DEFAULT_SCORE_BITS

    def copy(self) -> "EngineState":
        """Independent copy; the frozen config is shared, the runtime shape is not."""
        return dataclasses.replace(self, runtime_shape=dataclasses.replace(self.runtime_shape))
