# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Batched multi-class non-maximum suppression."""

from collections.abc import Sequence
from typing import Final

import torch

from detnms import envs
from detnms.errors import RuntimeShapeMismatch
from detnms.kernels.vision.batched_nms import per_class_suppression_launcher
from detnms.ops.vision.encoding import (
    INVALID_BOX_INDEX,
    INVALID_CLASS_ID,
    Detections,
    OutputEncoding,
    check_outputs,
)
from detnms.planner import BOX_CODE_SIZE, WorkspaceLayout, plan_state_workspace
from detnms.state import EngineState, Precision

_INTEGER_VIEWS: Final = {
    Precision.FLOAT: torch.int32,
    Precision.HALF: torch.int16,
}


def box_iou(boxes1: torch.Tensor, boxes2: torch.Tensor, is_normalized: bool) -> torch.Tensor:
    """Elementwise IoU between two broadcastable sets of boxes, computed in float32.

    Args:
        boxes1: Tensor of shape (..., 4) in (x1, y1, x2, y2) format.
        boxes2: Tensor of shape (..., 4) in (x1, y1, x2, y2) format.
        is_normalized: If False, coordinates are pixel-inclusive (a box spanning x1..x2 is
            x2 - x1 + 1 pixels wide).

    Returns:
        Float32 tensor of IoU values with the broadcast batch shape. Degenerate boxes (x2 <= x1
        or y2 <= y1) have IoU 0 with everything.
    """
    offset = 0.0 if is_normalized else 1.0

    x1_a, y1_a, x2_a, y2_a = boxes1.to(torch.float32).unbind(-1)
    x1_b, y1_b, x2_b, y2_b = boxes2.to(torch.float32).unbind(-1)

    area_a = (x2_a - x1_a + offset) * (y2_a - y1_a + offset)
    area_b = (x2_b - x1_b + offset) * (y2_b - y1_b + offset)

    inter_x1 = torch.maximum(x1_a, x1_b)
    inter_y1 = torch.maximum(y1_a, y1_b)
    inter_x2 = torch.minimum(x2_a, x2_b)
    inter_y2 = torch.minimum(y2_a, y2_b)
    zero = torch.zeros((), dtype=torch.float32, device=boxes1.device)
    inter_w = torch.where(inter_x2 >= inter_x1, inter_x2 - inter_x1 + offset, zero)
    inter_h = torch.where(inter_y2 >= inter_y1, inter_y2 - inter_y1 + offset, zero)
    inter_area = inter_w * inter_h

    union_area = area_a + area_b - inter_area
    valid = (x2_a > x1_a) & (y2_a > y1_a) & (x2_b > x1_b) & (y2_b > y1_b) & (union_area > 0)
    return torch.where(valid, inter_area / torch.where(valid, union_area, torch.ones_like(union_area)), zero)


def truncate_score_bits(scores: torch.Tensor, precision: Precision, score_bits: int) -> torch.Tensor:
    """Sort keys for scores, keeping only `score_bits` mantissa bits.

    Clearing low mantissa bits keeps the ordering monotonic (for either sign), it only merges
    nearly equal scores into ties. Returns float32 keys.
    """
    dropped_bits = precision.mantissa_bits - score_bits
    if dropped_bits <= 0:
        return scores.to(torch.float32)

    mask = -(1 << dropped_bits)
    integer_view = scores.contiguous().view(_INTEGER_VIEWS[precision])
    return (integer_view & mask).view(scores.dtype).to(torch.float32)


def clip_boxes(boxes: torch.Tensor, is_normalized: bool, image_size: tuple[float, float] | None) -> None:
    """Clamp box coordinates in place.

    Normalized boxes are clamped into [0, 1]. Pixel boxes are clamped into the image when its
    `(height, width)` is given, otherwise only to be non-negative.
    """
    if is_normalized:
        boxes.clamp_(min=0.0, max=1.0)
        return

    if image_size is None:
        boxes.clamp_(min=0.0)
        return

    height, width = image_size
    lower = torch.zeros(BOX_CODE_SIZE, dtype=boxes.dtype, device=boxes.device)
    upper = torch.tensor([width, height, width, height], dtype=boxes.dtype, device=boxes.device)
    boxes.clamp_(min=lower, max=upper)


def _suppress_torch(candidate_boxes: torch.Tensor, keep_mask: torch.Tensor, iou_threshold: float, is_normalized: bool) -> None:
    """Greedy suppression over sorted candidates, vectorized across (batch item, class) segments.

    Args:
        candidate_boxes: Sorted candidate boxes, shape: (S, K, 4).
        keep_mask: Candidate validity on entry, survivors on exit, shape: (S, K).
        iou_threshold: Boxes with IoU strictly greater than this are suppressed.
        is_normalized: Whether coordinates are normalized.
    """
    num_candidates = candidate_boxes.size(1)
    for current_idx in range(num_candidates - 1):
        current_box = candidate_boxes[:, current_idx : current_idx + 1]  # (S, 1, 4)
        remaining_boxes = candidate_boxes[:, current_idx + 1 :]  # (S, R, 4)

        ious = box_iou(current_box, remaining_boxes, is_normalized)  # (S, R)
        suppressed = keep_mask[:, current_idx : current_idx + 1] & (ious > iou_threshold)
        keep_mask[:, current_idx + 1 :] &= ~suppressed


def _carve(workspace: torch.Tensor, layout: WorkspaceLayout, name: str, dtype: torch.dtype, shape: Sequence[int]) -> torch.Tensor:
    segment = layout[name]
    numel = 1
    for dim in shape:
        numel *= dim
    nbytes = numel * dtype.itemsize
    assert nbytes <= segment.nbytes, f"Workspace segment {name!r} too small ({nbytes = }, {segment.nbytes = })"  # noqa: S101
    return workspace[segment.offset : segment.offset + nbytes].view(dtype).view(*shape)


def _check_inputs(
    state: EngineState,
    boxes: torch.Tensor,
    scores: torch.Tensor,
    workspace: torch.Tensor,
    workspace_batch_size: int | None,
) -> int:
    """Check a call's inputs against the bound state and the workspace.

    Returns:
        The batch size of the call.

    Raises:
        RuntimeShapeMismatch: if anything disagrees.
    """
    runtime_shape = state.runtime_shape
    if not runtime_shape.is_bound:
        msg = f"Input shapes must be bound before running suppression ({runtime_shape = })"
        raise RuntimeShapeMismatch(msg)

    expected_dtype = state.precision.torch_dtype
    if boxes.dtype != expected_dtype or scores.dtype != expected_dtype:
        msg = f"Input dtypes do not match the bound precision ({boxes.dtype = }, {scores.dtype = }, {expected_dtype = })"
        raise RuntimeShapeMismatch(msg)

    if boxes.dim() < 1 or scores.dim() < 1 or boxes.size(0) != scores.size(0):
        msg = f"Boxes and scores must share a leading batch dimension ({boxes.shape = }, {scores.shape = })"
        raise RuntimeShapeMismatch(msg)

    batch_size = boxes.size(0)

    if workspace_batch_size is not None and batch_size > workspace_batch_size:
        msg = f"Batch size {batch_size} exceeds the batch size the workspace was sized for ({workspace_batch_size = })"
        raise RuntimeShapeMismatch(msg)

    if boxes.numel() != batch_size * runtime_shape.boxes_size:
        msg = f"Boxes hold {boxes.numel()} values, expected {batch_size} x {runtime_shape.boxes_size} ({boxes.shape = })"
        raise RuntimeShapeMismatch(msg)

    if scores.numel() != batch_size * runtime_shape.scores_size:
        msg = f"Scores hold {scores.numel()} values, expected {batch_size} x {runtime_shape.scores_size} ({scores.shape = })"
        raise RuntimeShapeMismatch(msg)

    if boxes.device != scores.device or workspace.device != boxes.device:
        msg = f"Inputs and workspace must share a device ({boxes.device = }, {scores.device = }, {workspace.device = })"
        raise RuntimeShapeMismatch(msg)

    if workspace.dtype != torch.uint8 or workspace.dim() != 1 or not workspace.is_contiguous():
        msg = f"Workspace must be a contiguous 1-D uint8 tensor ({workspace.dtype = }, {workspace.shape = })"
        raise RuntimeShapeMismatch(msg)

    required_bytes = plan_state_workspace(state, batch_size).total_bytes
    if workspace.numel() < required_bytes:
        msg = f"Workspace holds {workspace.numel()} bytes, batch size {batch_size} needs {required_bytes}"
        raise RuntimeShapeMismatch(msg)

    return batch_size


def batched_nms(  # noqa: PLR0913
    state: EngineState,
    boxes: torch.Tensor,
    scores: torch.Tensor,
    workspace: torch.Tensor,
    encoding: OutputEncoding,
    image_size: tuple[float, float] | None = None,
    outputs: Sequence[torch.Tensor] | None = None,
    workspace_batch_size: int | None = None,
) -> tuple[torch.Tensor, ...]:
    """Batched multi-class NMS.

    For every batch item and every class except the background class, candidates scoring above
    the score threshold are ranked (by score keys truncated to `score_bits` mantissa bits, ties
    broken by lowest prior index), cut to `top_k`, and greedily suppressed by IoU. The survivors
    of all classes are merged by descending score and cut to `keep_top_k`.

    Args:
        state: Bound engine state.
        boxes: Boxes, `batch x boxes_size` values laid out as (batch, num_priors, num_loc_classes, 4)
            in (x1, y1, x2, y2) format; any shape with that element order is accepted.
        scores: Scores, `batch x scores_size` values laid out as (batch, num_priors, num_classes).
        workspace: Caller-owned uint8 scratch memory, at least `get_workspace_size` bytes.
        encoding: Output encoding strategy.
        image_size: (Optional) `(height, width)` used to clip pixel coordinates.
        outputs: (Optional) preallocated output tensors to write into.
        workspace_batch_size: (Optional) batch size the workspace was planned for; larger batches are
            rejected even when the workspace happens to hold enough bytes.

    Returns:
        Output tensors of the encoding.

    Raises:
        RuntimeShapeMismatch: if inputs, workspace, or outputs disagree with the bound state. Nothing
            is written in that case.
    """
    batch_size = _check_inputs(state, boxes, scores, workspace, workspace_batch_size)

    config = state.config
    dtype = state.precision.torch_dtype
    device = boxes.device

    if outputs is not None:
        check_outputs(encoding, outputs, batch_size, config.keep_top_k, dtype, device)

    num_priors = state.runtime_shape.num_priors
    num_classes = config.num_classes
    num_loc_classes = config.num_loc_classes
    num_candidates = min(config.top_k, num_priors)

    layout = plan_state_workspace(state, batch_size)

    # Step 1: clip boxes into the workspace copy
    bbox_data = _carve(workspace, layout, "bbox_data", dtype, (batch_size, num_priors, num_loc_classes, BOX_CODE_SIZE))
    bbox_data.copy_(boxes.reshape(bbox_data.shape))
    if state.clip_boxes:
        clip_boxes(bbox_data, config.is_normalized, image_size)

    # Class-major geometry: (batch, class, prior, 4)
    if config.share_location:
        class_boxes = bbox_data[:, :, 0].unsqueeze(1).expand(-1, num_classes, -1, -1)
    else:
        class_boxes = _carve(workspace, layout, "bbox_permute", dtype, (batch_size, num_classes, num_priors, BOX_CODE_SIZE))
        class_boxes.copy_(bbox_data.permute(0, 2, 1, 3))

    # Step 2: candidate filtering, strictly above the threshold, background class excluded
    class_scores = scores.reshape(batch_size, num_priors, num_classes).permute(0, 2, 1)  # (B, C, P)
    candidate_valid = class_scores.to(torch.float32) > config.score_threshold
    if config.background_label_id >= 0:
        candidate_valid[:, config.background_label_id] = False

    # Step 3: truncated sort keys, invalid candidates sink to the bottom
    pre_nms_scores = _carve(workspace, layout, "pre_nms_scores", torch.float32, (batch_size, num_classes, num_priors))
    keys = truncate_score_bits(class_scores, state.precision, state.score_bits)
    pre_nms_scores.copy_(keys.masked_fill(~candidate_valid, float("-inf")))

    # Step 4: per-class top-K, stable so equal keys keep ascending prior order
    _, sorted_priors = torch.sort(pre_nms_scores, dim=-1, descending=True, stable=True)
    pre_nms_indices = _carve(workspace, layout, "pre_nms_indices", torch.int32, (batch_size, num_classes, num_priors))
    pre_nms_indices.copy_(sorted_priors)

    top_priors = pre_nms_indices[..., :num_candidates].long()  # (B, C, K)
    top_valid = torch.gather(candidate_valid, -1, top_priors)
    top_scores = torch.gather(class_scores, -1, top_priors)
    top_boxes = torch.gather(class_boxes, 2, top_priors.unsqueeze(-1).expand(-1, -1, -1, BOX_CODE_SIZE)).contiguous()

    # Step 5: greedy suppression per (batch item, class)
    num_segments = batch_size * num_classes
    keep_mask = _carve(workspace, layout, "sort_scratch", torch.bool, (num_segments, num_candidates))
    keep_mask.copy_(top_valid.reshape(num_segments, num_candidates))
    segment_boxes = top_boxes.view(num_segments, num_candidates, BOX_CODE_SIZE)
    if device.type == "cuda" and not envs.DETNMS_DISABLE_TRITON:
        per_class_suppression_launcher(segment_boxes, keep_mask, config.iou_threshold, config.is_normalized)
    else:
        _suppress_torch(segment_boxes, keep_mask, config.iou_threshold, config.is_normalized)
    survivors = keep_mask.view(batch_size, num_classes, num_candidates)

    post_nms_scores = _carve(workspace, layout, "post_nms_scores", torch.float32, (batch_size, num_classes, num_candidates))
    post_nms_scores.copy_(top_scores.to(torch.float32).masked_fill(~survivors, float("-inf")))
    post_nms_indices = _carve(workspace, layout, "post_nms_indices", torch.int32, (batch_size, num_classes, num_candidates))
    post_nms_indices.copy_(top_priors.masked_fill(~survivors, INVALID_BOX_INDEX))

    # Step 6: cross-class merge, ties keep class-major order
    merge_size = num_classes * num_candidates
    sorted_scores, merged_positions = torch.sort(post_nms_scores.view(batch_size, merge_size), dim=-1, descending=True, stable=True)
    merged_keys = _carve(workspace, layout, "sort_scratch", torch.float32, (batch_size, merge_size))
    merged_keys.copy_(sorted_scores)

    detections = _gather_detections(
        merged_keys=merged_keys,
        merged_positions=merged_positions,
        top_scores=top_scores.reshape(batch_size, merge_size),
        top_boxes=top_boxes.view(batch_size, merge_size, BOX_CODE_SIZE),
        post_nms_indices=post_nms_indices.view(batch_size, merge_size),
        num_candidates=num_candidates,
        keep_top_k=config.keep_top_k,
    )

    # Step 7: output encoding
    return encoding.encode(detections, outputs)


def _gather_detections(  # noqa: PLR0913
    merged_keys: torch.Tensor,
    merged_positions: torch.Tensor,
    top_scores: torch.Tensor,
    top_boxes: torch.Tensor,
    post_nms_indices: torch.Tensor,
    num_candidates: int,
    keep_top_k: int,
) -> Detections:
    batch_size, merge_size = merged_keys.shape
    num_kept = min(keep_top_k, merge_size)
    dtype = top_boxes.dtype
    device = top_boxes.device

    positions = merged_positions[:, :num_kept]
    valid = merged_keys[:, :num_kept] != float("-inf")

    boxes = torch.zeros((batch_size, keep_top_k, BOX_CODE_SIZE), dtype=dtype, device=device)
    scores = torch.zeros((batch_size, keep_top_k), dtype=dtype, device=device)
    classes = torch.full((batch_size, keep_top_k), INVALID_CLASS_ID, dtype=torch.int32, device=device)
    box_indices = torch.full((batch_size, keep_top_k), INVALID_BOX_INDEX, dtype=torch.int32, device=device)

    if num_kept > 0:
        gathered_boxes = torch.gather(top_boxes, 1, positions.unsqueeze(-1).expand(-1, -1, BOX_CODE_SIZE))
        boxes[:, :num_kept] = gathered_boxes.masked_fill(~valid.unsqueeze(-1), 0)
        scores[:, :num_kept] = torch.gather(top_scores, 1, positions).masked_fill(~valid, 0)
        classes[:, :num_kept] = torch.where(valid, positions // num_candidates, INVALID_CLASS_ID).to(torch.int32)
        box_indices[:, :num_kept] = torch.gather(post_nms_indices, 1, positions)

    return Detections(
        num_detections=valid.sum(dim=1, dtype=torch.int32),
        boxes=boxes,
        scores=scores,
        classes=classes,
        box_indices=box_indices,
    )
