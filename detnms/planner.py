# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Shape inference and workspace planning for batched multi-class NMS.

Two binding modes are supported and derive the same per-item quantities:

* static: per-item dims, boxes `(num_priors, num_loc_classes, 4)` and scores
  `(num_priors, num_classes)` or `(num_priors, num_classes, 1)`;
* dynamic: dims including the batch, boxes `(batch, num_priors * num_loc_classes, 4)`
  and scores `(batch, num_priors, num_classes)` or `(batch, num_priors, num_classes, 1)`.
  During output-shape inference any dim may be symbolic (`None` or `-1`).
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import torch

from detnms.errors import ConfigError, ShapeError
from detnms.state import EngineState, NMSConfig, Precision, RuntimeShape

logger = logging.getLogger(__name__)

Dims = Sequence[int | None]

BOX_CODE_SIZE: Final = 4
MERGED_RECORD_SIZE: Final = 3

_WORKSPACE_ALIGNMENT: Final = 256
# Sort keys are always float32, sort payloads (indices) always int32
_KEY_BYTES: Final = 4
_INDEX_BYTES: Final = 4


def validate_parameters(state: EngineState) -> None:
    """Range checks for values the field parser accepts on type alone.

    Raises:
        ConfigError: if any parameter is out of range.
    """
    config = state.config

    if config.num_classes < 1:
        msg = f"numClasses must be >= 1 ({config.num_classes = })"
        raise ConfigError(msg)

    if config.top_k < 0:
        msg = f"topK must be >= 0 ({config.top_k = })"
        raise ConfigError(msg)

    if config.keep_top_k < 0:
        msg = f"keepTopK must be >= 0 ({config.keep_top_k = })"
        raise ConfigError(msg)

    if not 0.0 <= config.iou_threshold <= 1.0:
        msg = f"iouThreshold must lie in [0, 1] ({config.iou_threshold = })"
        raise ConfigError(msg)

    if config.background_label_id != -1 and not 0 <= config.background_label_id < config.num_classes:
        msg = f"backgroundLabelId must be -1 or a valid class index ({config.background_label_id = }, {config.num_classes = })"
        raise ConfigError(msg)

    if state.score_bits < 1:
        msg = f"scoreBits must be >= 1 ({state.score_bits = })"
        raise ConfigError(msg)


def resolve_precision(box_dtype: torch.dtype, score_dtype: torch.dtype) -> Precision:
    """Working precision for the given input dtypes.

    Raises:
        ConfigError: for unsupported dtypes or when boxes and scores differ.
    """
    if box_dtype != score_dtype:
        msg = f"Mixed precision between boxes and scores is not supported ({box_dtype = }, {score_dtype = })"
        raise ConfigError(msg)

    try:
        return Precision.from_dtype(box_dtype)
    except ValueError as e:
        raise ConfigError(str(e)) from e


def _is_symbolic(dim: int | None) -> bool:
    return dim is None or dim < 0


def _check_concrete(name: str, dims: Dims) -> list[int]:
    if any(_is_symbolic(dim) for dim in dims):
        msg = f"{name} shape must be fully known when binding ({dims = })"
        raise ShapeError(msg)
    return [int(dim) for dim in dims]  # type: ignore[arg-type]


def _check_score_rank(score_dims: Dims, base_rank: int) -> None:
    if len(score_dims) == base_rank:
        return

    trailing = score_dims[-1] if score_dims else None
    if len(score_dims) == base_rank + 1 and (_is_symbolic(trailing) or trailing == 1):
        return

    msg = f"Scores must be {base_rank}-D, or {base_rank + 1}-D with a trailing singleton ({score_dims = })"
    raise ShapeError(msg)


def plan_static(config: NMSConfig, box_dims: Dims, score_dims: Dims) -> RuntimeShape:
    """Bind per-item (batch-free) input dims.

    Args:
        config: NMS configuration.
        box_dims: `(num_priors, num_loc_classes, 4)`.
        score_dims: `(num_priors, num_classes)` or `(num_priors, num_classes, 1)`.

    Returns:
        The derived runtime shape.

    Raises:
        ShapeError: on any rank or dimension mismatch.
    """
    expected_box_rank: Final = 3

    if len(box_dims) != expected_box_rank:
        msg = f"Boxes have unexpected shape ({box_dims = }), expected {expected_box_rank}-D per-item dims"
        raise ShapeError(msg)

    _check_score_rank(score_dims, base_rank=2)

    num_priors, num_loc_classes, box_code_size = _check_concrete("Boxes", box_dims)
    score_priors, score_classes = _check_concrete("Scores", score_dims)[:2]

    if num_loc_classes != config.num_loc_classes:
        msg = f"Box class dimension must be {config.num_loc_classes} ({num_loc_classes = }, {config.share_location = })"
        raise ShapeError(msg)

    if box_code_size != BOX_CODE_SIZE:
        msg = f"Boxes must have {BOX_CODE_SIZE} coordinates ({box_code_size = })"
        raise ShapeError(msg)

    if score_priors != num_priors:
        msg = f"Number of priors of boxes and scores does not match ({num_priors = }, {score_priors = })"
        raise ShapeError(msg)

    if score_classes != config.num_classes:
        msg = f"Score class dimension does not match numClasses ({score_classes = }, {config.num_classes = })"
        raise ShapeError(msg)

    runtime_shape = RuntimeShape(
        boxes_size=num_priors * num_loc_classes * box_code_size,
        scores_size=num_priors * score_classes,
        num_priors=num_priors,
    )
    logger.debug("Bound static shapes %s / %s -> %s", tuple(box_dims), tuple(score_dims), runtime_shape)
    return runtime_shape


def static_output_shapes(config: NMSConfig) -> list[tuple[int, ...]]:
    """Per-item output shapes of the fixed-shape variant: count, boxes, scores, classes."""
    return [
        (),
        (config.keep_top_k, BOX_CODE_SIZE),
        (config.keep_top_k,),
        (config.keep_top_k,),
    ]


def infer_dynamic_output_shape(
    config: NMSConfig, box_dims: Dims, score_dims: Dims
) -> tuple[tuple[int | None, int, int], RuntimeShape]:
    """Output dims of the merged variant, computed from possibly symbolic input dims.

    Args:
        config: NMS configuration.
        box_dims: `(batch, num_priors * num_loc_classes, 4)`, entries may be `None`/`-1`.
        score_dims: `(batch, num_priors, num_classes[, 1])`, entries may be `None`/`-1`.

    Returns:
        The output dims `(batch, keep_top_k, 3)` (batch mirrors the box batch dim, `None`
        when symbolic) and a runtime shape holding the sizes that follow from constant dims
        (the others stay unbound).

    Raises:
        ShapeError: on rank mismatch, or a constant dim contradicting the configuration.
    """
    expected_box_rank: Final = 3

    if len(box_dims) != expected_box_rank:
        msg = f"Boxes have unexpected shape ({box_dims = }), expected {expected_box_rank}-D tensor"
        raise ShapeError(msg)

    _check_score_rank(score_dims, base_rank=3)

    batch, box_rows, box_code_size = box_dims
    _, score_priors, score_classes = score_dims[:3]

    if not _is_symbolic(box_code_size) and box_code_size != BOX_CODE_SIZE:
        msg = f"Boxes must have {BOX_CODE_SIZE} coordinates ({box_code_size = })"
        raise ShapeError(msg)

    if not _is_symbolic(score_classes) and score_classes != config.num_classes:
        msg = f"Score class dimension does not match numClasses ({score_classes = }, {config.num_classes = })"
        raise ShapeError(msg)

    runtime_shape = RuntimeShape()
    if not _is_symbolic(box_rows) and not _is_symbolic(box_code_size):
        runtime_shape.boxes_size = box_rows * box_code_size  # type: ignore[operator]
        runtime_shape.num_priors = _priors_from_box_rows(config, box_rows)  # type: ignore[arg-type]

    if not _is_symbolic(score_priors) and not _is_symbolic(score_classes):
        runtime_shape.scores_size = score_priors * score_classes  # type: ignore[operator]

    output_batch = None if _is_symbolic(batch) else batch
    logger.debug(
        "Inferred merged output dims (%s, %d, %d), topK=%d, keepTopK=%d",
        output_batch,
        config.keep_top_k,
        MERGED_RECORD_SIZE,
        config.top_k,
        config.keep_top_k,
    )
    return (output_batch, config.keep_top_k, MERGED_RECORD_SIZE), runtime_shape


def _priors_from_box_rows(config: NMSConfig, box_rows: int) -> int:
    if box_rows % config.num_loc_classes != 0:
        msg = f"Box rows must be a multiple of {config.num_loc_classes} ({box_rows = }, {config.share_location = })"
        raise ShapeError(msg)
    return box_rows // config.num_loc_classes


def plan_dynamic(config: NMSConfig, box_dims: Dims, score_dims: Dims) -> RuntimeShape:
    """Bind concrete dims (batch included) of the merged variant.

    Raises:
        ShapeError: on any rank or dimension mismatch.
    """
    expected_box_rank: Final = 3

    if len(box_dims) != expected_box_rank:
        msg = f"Boxes have unexpected shape ({box_dims = }), expected {expected_box_rank}-D tensor"
        raise ShapeError(msg)

    _check_score_rank(score_dims, base_rank=3)

    batch, box_rows, box_code_size = _check_concrete("Boxes", box_dims)
    score_batch, score_priors, score_classes = _check_concrete("Scores", score_dims)[:3]

    if box_code_size != BOX_CODE_SIZE:
        msg = f"Boxes must have {BOX_CODE_SIZE} coordinates ({box_code_size = })"
        raise ShapeError(msg)

    if batch != score_batch:
        msg = f"Batch size of boxes and scores does not match ({batch = }, {score_batch = })"
        raise ShapeError(msg)

    num_priors = _priors_from_box_rows(config, box_rows)

    if score_priors != num_priors:
        msg = f"Number of priors of boxes and scores does not match ({num_priors = }, {score_priors = })"
        raise ShapeError(msg)

    if score_classes != config.num_classes:
        msg = f"Score class dimension does not match numClasses ({score_classes = }, {config.num_classes = })"
        raise ShapeError(msg)

    runtime_shape = RuntimeShape(
        boxes_size=box_rows * box_code_size,
        scores_size=score_priors * score_classes,
        num_priors=num_priors,
    )
    logger.debug("Bound dynamic shapes %s / %s -> %s", tuple(box_dims), tuple(score_dims), runtime_shape)
    return runtime_shape


@dataclass(frozen=True)
class WorkspaceSegment:
    """Byte range of one scratch buffer inside the workspace."""

    name: str
    offset: int
    nbytes: int


@dataclass(frozen=True)
class WorkspaceLayout:
    """Placement of all scratch buffers used by one suppression call."""

    segments: tuple[WorkspaceSegment, ...]
    total_bytes: int

    def __getitem__(self, name: str) -> WorkspaceSegment:
        for segment in self.segments:
            if segment.name == name:
                return segment
        msg = f"No workspace segment named {name!r}"
        raise KeyError(msg)


def _align(nbytes: int) -> int:
    return (nbytes + _WORKSPACE_ALIGNMENT - 1) // _WORKSPACE_ALIGNMENT * _WORKSPACE_ALIGNMENT


def plan_workspace(  # noqa: PLR0913
    share_location: bool,
    batch_size: int,
    boxes_size: int,
    scores_size: int,
    num_classes: int,
    num_priors: int,
    top_k: int,
    precision: Precision,
) -> WorkspaceLayout:
    """Lay out the scratch memory for one suppression call.

    Every segment starts on a 256-byte boundary. Segments, in order:

    * `bbox_data`: clipped boxes, `batch * boxes_size` elements of the working dtype;
    * `bbox_permute`: class-major copy of the boxes, empty when locations are shared;
    * `pre_nms_scores` / `pre_nms_indices`: per-class sort keys and sorted prior indices,
      `batch * scores_size` float32 / int32 each;
    * `post_nms_scores` / `post_nms_indices`: per-class top-K candidates,
      `batch * num_classes * top_k` float32 / int32 each;
    * `sort_scratch`: the larger of the per-class sort buffer and the per-image merge buffer.

    Raises:
        ConfigError: if any size is negative.
    """
    sizes = {
        "batch_size": batch_size,
        "boxes_size": boxes_size,
        "scores_size": scores_size,
        "num_classes": num_classes,
        "num_priors": num_priors,
        "top_k": top_k,
    }
    negative = {name: value for name, value in sizes.items() if value < 0}
    if negative:
        msg = f"Workspace sizes must be non-negative ({negative})"
        raise ConfigError(msg)

    bbox_bytes = batch_size * boxes_size * precision.itemsize
    pre_nms_count = batch_size * scores_size
    post_nms_count = batch_size * num_classes * top_k
    per_class_sort_bytes = batch_size * num_classes * num_priors * (precision.itemsize + _INDEX_BYTES)
    per_image_sort_bytes = post_nms_count * (_KEY_BYTES + _INDEX_BYTES)

    requests = [
        ("bbox_data", bbox_bytes),
        ("bbox_permute", 0 if share_location else bbox_bytes),
        ("pre_nms_scores", pre_nms_count * _KEY_BYTES),
        ("pre_nms_indices", pre_nms_count * _INDEX_BYTES),
        ("post_nms_scores", post_nms_count * _KEY_BYTES),
        ("post_nms_indices", post_nms_count * _INDEX_BYTES),
        ("sort_scratch", max(per_class_sort_bytes, per_image_sort_bytes)),
    ]

    segments = []
    offset = 0
    for name, nbytes in requests:
        segments.append(WorkspaceSegment(name, offset, nbytes))
        offset += _align(nbytes)

    return WorkspaceLayout(tuple(segments), offset)


def get_workspace_size(  # noqa: PLR0913
    share_location: bool,
    batch_size: int,
    boxes_size: int,
    scores_size: int,
    num_classes: int,
    num_priors: int,
    top_k: int,
    precision: Precision,
) -> int:
    """Exact number of scratch bytes one suppression call needs."""
    return plan_workspace(
        share_location, batch_size, boxes_size, scores_size, num_classes, num_priors, top_k, precision
    ).total_bytes


def state_workspace_size(state: EngineState, batch_size: int) -> int:
    """Workspace size for a bound engine state and a given batch size."""
    return plan_state_workspace(state, batch_size).total_bytes


def plan_state_workspace(state: EngineState, batch_size: int) -> WorkspaceLayout:
    """Workspace layout for a bound engine state and a given batch size."""
    return plan_workspace(
        share_location=state.config.share_location,
        batch_size=batch_size,
        boxes_size=state.runtime_shape.boxes_size,
        scores_size=state.runtime_shape.scores_size,
        num_classes=state.config.num_classes,
        num_priors=state.runtime_shape.num_priors,
        top_k=state.config.top_k,
        precision=state.precision,
    )
