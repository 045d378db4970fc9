# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Output encodings of the batched NMS engine.

Both encodings consume the same `Detections` produced by the suppression core:

* `FixedShapeEncoding` writes four tensors: `num_detections [B]` (int32), `nmsed_boxes [B, K, 4]`,
  `nmsed_scores [B, K]` (both in the working dtype) and `nmsed_classes [B, K]` (int32).
* `MergedEncoding` writes one int32 tensor `[B, K, 3]` holding, per detection, the class id, the
  float32 score bit pattern reinterpreted as int32, and the prior index of the originating box.
  Invalid slots hold `(-1, 0, -1)`.
"""

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final, Protocol

import torch

from detnms.errors import RuntimeShapeMismatch
from detnms.planner import BOX_CODE_SIZE, MERGED_RECORD_SIZE

INVALID_CLASS_ID: Final = -1
INVALID_BOX_INDEX: Final = -1


@dataclass
class Detections:
    """Merged detections of one call, padded to `keep_top_k` slots per batch item."""

    num_detections: torch.Tensor  # [B], int32
    boxes: torch.Tensor  # [B, K, 4], working dtype
    scores: torch.Tensor  # [B, K], working dtype
    classes: torch.Tensor  # [B, K], int32
    box_indices: torch.Tensor  # [B, K], int32


class OutputEncoding(Protocol):
    """Strategy turning `Detections` into the output tensors of one engine variant."""

    num_outputs: int

    def output_shapes(self, batch_size: int, keep_top_k: int) -> list[tuple[int, ...]]: ...

    def output_dtypes(self, dtype: torch.dtype) -> list[torch.dtype]: ...

    def encode(self, detections: Detections, outputs: Sequence[torch.Tensor] | None) -> tuple[torch.Tensor, ...]: ...


def _write_or_return(
    results: Sequence[torch.Tensor], outputs: Sequence[torch.Tensor] | None
) -> tuple[torch.Tensor, ...]:
    if outputs is None:
        return tuple(results)

    for output, result in zip(outputs, results, strict=True):
        output.copy_(result)

    return tuple(outputs)


class FixedShapeEncoding:
    """Four separate output tensors: count, boxes, scores, class ids."""

    num_outputs = 4

    def output_shapes(self, batch_size: int, keep_top_k: int) -> list[tuple[int, ...]]:
        return [
            (batch_size,),
            (batch_size, keep_top_k, BOX_CODE_SIZE),
            (batch_size, keep_top_k),
            (batch_size, keep_top_k),
        ]

    def output_dtypes(self, dtype: torch.dtype) -> list[torch.dtype]:
        return [torch.int32, dtype, dtype, torch.int32]

    def encode(self, detections: Detections, outputs: Sequence[torch.Tensor] | None) -> tuple[torch.Tensor, ...]:
        results = [
            detections.num_detections,
            detections.boxes,
            detections.scores,
            detections.classes,
        ]
        return _write_or_return(results, outputs)


class MergedEncoding:
    """Single int32 tensor of (class id, score bits, box index) records."""

    num_outputs = 1

    def output_shapes(self, batch_size: int, keep_top_k: int) -> list[tuple[int, ...]]:
        return [(batch_size, keep_top_k, MERGED_RECORD_SIZE)]

    def output_dtypes(self, dtype: torch.dtype) -> list[torch.dtype]:
        return [torch.int32]

    def encode(self, detections: Detections, outputs: Sequence[torch.Tensor] | None) -> tuple[torch.Tensor, ...]:
        score_bits = detections.scores.to(torch.float32).contiguous().view(torch.int32)
        merged = torch.stack([detections.classes, score_bits, detections.box_indices], dim=-1)
        return _write_or_return([merged], outputs)


def decode_merged(merged: torch.Tensor) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """Split a merged output into class ids, float32 scores, and box indices."""
    classes = merged[..., 0]
    scores = merged[..., 1].contiguous().view(torch.float32)
    box_indices = merged[..., 2]
    return classes, scores, box_indices


def check_outputs(
    encoding: OutputEncoding,
    outputs: Sequence[torch.Tensor],
    batch_size: int,
    keep_top_k: int,
    dtype: torch.dtype,
    device: torch.device,
) -> None:
    """Validate caller-provided output tensors before anything is written to them.

    Raises:
        RuntimeShapeMismatch: on a count, shape, dtype or device mismatch.
    """
    if len(outputs) != encoding.num_outputs:
        msg = f"Expected {encoding.num_outputs} output tensors, got {len(outputs)}"
        raise RuntimeShapeMismatch(msg)

    expected_shapes = encoding.output_shapes(batch_size, keep_top_k)
    expected_dtypes = encoding.output_dtypes(dtype)
    for index, (output, shape, output_dtype) in enumerate(zip(outputs, expected_shapes, expected_dtypes, strict=True)):
        if tuple(output.shape) != shape or output.dtype != output_dtype:
            msg = f"Output {index} has unexpected layout ({output.shape = }, {output.dtype = }), expected {shape} {output_dtype}"
            raise RuntimeShapeMismatch(msg)

        if output.device != device:
            msg = f"Output {index} lives on {output.device}, inputs on {device}"
            raise RuntimeShapeMismatch(msg)
