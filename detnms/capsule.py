# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Binary capsule of the engine state.

Little-endian, fields written back to back in this order:

* NMS parameters (32 bytes, C layout with padding): `shareLocation` (bool + 3 pad bytes),
  `backgroundLabelId`, `numClasses`, `topK`, `keepTopK` (int32 each), `scoreThreshold`,
  `iouThreshold` (float32 each), `isNormalized` (bool + 3 pad bytes);
* `boxesSize`, `scoresSize`, `numPriors` (int32 each, -1 when unbound);
* `clipBoxes` (bool, 1 byte);
* `precision` (int32 code, see `Precision`);
* `scoreBits` (int32).
"""

import logging
import struct
from typing import Any, Final

from detnms.errors import CorruptStateError
from detnms.state import EngineState, NMSConfig, Precision, RuntimeShape

logger = logging.getLogger(__name__)

_NMS_PARAMETERS: Final = struct.Struct("<?3x4i2f?3x")
_RUNTIME_SHAPE: Final = struct.Struct("<3i")
_CLIP_BOXES: Final = struct.Struct("<?")
_PRECISION: Final = struct.Struct("<i")
_SCORE_BITS: Final = struct.Struct("<i")

SERIALIZATION_SIZE: Final = (
    _NMS_PARAMETERS.size + _RUNTIME_SHAPE.size + _CLIP_BOXES.size + _PRECISION.size + _SCORE_BITS.size
)


class CapsuleWriter:
    """Append-only byte buffer of a declared size."""

    def __init__(self, size: int) -> None:
        self._size = size
        self._buffer = bytearray()

    def write(self, layout: struct.Struct, *values: Any) -> None:
        assert len(self._buffer) + layout.size <= self._size, "Capsule overflow"  # noqa: S101
        self._buffer += layout.pack(*values)

    def getvalue(self) -> bytes:
        return bytes(self._buffer)


class CapsuleReader:
    """Cursor over a capsule that refuses to read past its end."""

    def __init__(self, data: bytes) -> None:
        self._data = memoryview(data)
        self._offset = 0

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def read(self, layout: struct.Struct) -> tuple[Any, ...]:
        if layout.size > self.remaining:
            msg = f"Capsule truncated at byte {self._offset}: need {layout.size} more bytes, {self.remaining} left"
            raise CorruptStateError(msg)

        values = layout.unpack_from(self._data, self._offset)
        self._offset += layout.size
        return values


def serialize_state(state: EngineState) -> bytes:
    """Encode an engine state into exactly `SERIALIZATION_SIZE` bytes."""
    config = state.config
    runtime_shape = state.runtime_shape

    writer = CapsuleWriter(SERIALIZATION_SIZE)
    writer.write(
        _NMS_PARAMETERS,
        config.share_location,
        config.background_label_id,
        config.num_classes,
        config.top_k,
        config.keep_top_k,
        config.score_threshold,
        config.iou_threshold,
        config.is_normalized,
    )
    writer.write(_RUNTIME_SHAPE, runtime_shape.boxes_size, runtime_shape.scores_size, runtime_shape.num_priors)
    writer.write(_CLIP_BOXES, state.clip_boxes)
    writer.write(_PRECISION, int(state.precision))
    writer.write(_SCORE_BITS, state.score_bits)

    data = writer.getvalue()
    assert len(data) == SERIALIZATION_SIZE, f"Capsule has {len(data)} bytes, expected {SERIALIZATION_SIZE}"  # noqa: S101
    return data


def deserialize_state(data: bytes) -> EngineState:
    """Decode a capsule produced by `serialize_state`.

    Raises:
        CorruptStateError: if the capsule is too short, too long, or holds an unknown precision.
    """
    reader = CapsuleReader(data)

    (
        share_location,
        background_label_id,
        num_classes,
        top_k,
        keep_top_k,
        score_threshold,
        iou_threshold,
        is_normalized,
    ) = reader.read(_NMS_PARAMETERS)
    boxes_size, scores_size, num_priors = reader.read(_RUNTIME_SHAPE)
    (clip_boxes,) = reader.read(_CLIP_BOXES)
    (precision_code,) = reader.read(_PRECISION)
    (score_bits,) = reader.read(_SCORE_BITS)

    if reader.remaining != 0:
        msg = f"Capsule has {reader.remaining} trailing bytes, expected exactly {SERIALIZATION_SIZE}"
        raise CorruptStateError(msg)

    try:
        precision = Precision(precision_code)
    except ValueError as e:
        msg = f"Capsule holds unknown precision code {precision_code}"
        raise CorruptStateError(msg) from e

    config = NMSConfig(
        share_location=share_location,
        background_label_id=background_label_id,
        num_classes=num_classes,
        top_k=top_k,
        keep_top_k=keep_top_k,
        score_threshold=score_threshold,
        iou_threshold=iou_threshold,
        is_normalized=is_normalized,
    )
    state = EngineState(
        config=config,
        runtime_shape=RuntimeShape(boxes_size=boxes_size, scores_size=scores_size, num_priors=num_priors),
        clip_boxes=clip_boxes,
        precision=precision,
        score_bits=score_bits,
    )
    logger.debug("Restored engine state from %d-byte capsule: %s", len(data), state)
    return state
