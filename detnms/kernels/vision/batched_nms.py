# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Triton implementation of the per-class greedy suppression of batched multi-class NMS.

Each program owns one (batch item, class) segment: a list of candidate boxes already sorted by
descending score. Boxes are walked in order and every lower-ranked box whose IoU with a kept box
exceeds the threshold is suppressed, blockwise, in the same style as the single-class kernel in
torchvision's CUDA NMS:
https://github.com/pytorch/vision/blob/0721867e42841171254c7acaa45fbaf8ee16d3d7/torchvision/csrc/ops/cuda/nms_kernel.cu
"""

import torch
import triton
import triton.language as tl


@triton.autotune(  # type: ignore[misc]
    configs=[
        triton.Config({"cxpr_block_size": 16}),
        triton.Config({"cxpr_block_size": 32}),
        triton.Config({"cxpr_block_size": 64}),
        triton.Config({"cxpr_block_size": 128}),
        triton.Config({"cxpr_block_size": 256}),
    ],
    key=["num_candidates"],
)
@triton.jit  # type: ignore[misc]
def _per_class_suppression_kernel(
    # Tensors
    boxes_ptr: tl.tensor,  # [S, K, 4]
    keep_mask_ptr: tl.tensor,  # [S, K]
    # Scalars
    num_candidates: tl.int32,
    iou_threshold: float,
    coord_offset: float,
    # Strides
    boxes_segment_stride: int,
    boxes_stride: int,
    keep_mask_segment_stride: int,
    # Constexprs
    cxpr_block_size: tl.constexpr,
) -> None:
    """Greedy suppression within one sorted candidate list.

    Args:
        boxes_ptr: Pointer to candidate boxes, sorted by score within each segment, shape: (S, K, 4)
            in (x1, y1, x2, y2) format.
        keep_mask_ptr: Pointer to keep mask, shape: (S, K). Must hold candidate validity on entry,
            holds the survivors on exit.
        num_candidates: Number of candidates per segment (K).
        iou_threshold: Boxes with IoU strictly greater than this are suppressed.
        coord_offset: 0 for normalized coordinates, 1 for pixel-inclusive coordinates.
        boxes_segment_stride: Stride between segments of the boxes tensor.
        boxes_stride: Stride between boxes of the boxes tensor.
        keep_mask_segment_stride: Stride between segments of the keep mask tensor.
        cxpr_block_size: Block size for processing.
    """
    # One (batch item, class) segment per program
    segment_index = tl.program_id(0)
    segment_boxes_ptr = boxes_ptr + segment_index * boxes_segment_stride
    segment_keep_ptr = keep_mask_ptr + segment_index * keep_mask_segment_stride

    for current_idx in range(num_candidates - 1):
        is_kept = tl.load(segment_keep_ptr + current_idx)
        if is_kept:
            # Load the reference box
            box1_offset = current_idx * boxes_stride
            box1_x1 = tl.load(segment_boxes_ptr + box1_offset + 0).to(tl.float32)
            box1_y1 = tl.load(segment_boxes_ptr + box1_offset + 1).to(tl.float32)
            box1_x2 = tl.load(segment_boxes_ptr + box1_offset + 2).to(tl.float32)
            box1_y2 = tl.load(segment_boxes_ptr + box1_offset + 3).to(tl.float32)

            box1_valid = (box1_x2 > box1_x1) & (box1_y2 > box1_y1)
            box1_area = (box1_x2 - box1_x1 + coord_offset) * (box1_y2 - box1_y1 + coord_offset)

            # Only lower-ranked boxes can be suppressed by the current one
            for col_block_start in range(current_idx + 1, num_candidates, cxpr_block_size):
                col_offsets = col_block_start + tl.arange(0, cxpr_block_size)
                col_mask = col_offsets < num_candidates

                box2_offsets = col_offsets * boxes_stride
                box2_x1 = tl.load(segment_boxes_ptr + box2_offsets + 0, mask=col_mask, other=0.0).to(tl.float32)
                box2_y1 = tl.load(segment_boxes_ptr + box2_offsets + 1, mask=col_mask, other=0.0).to(tl.float32)
                box2_x2 = tl.load(segment_boxes_ptr + box2_offsets + 2, mask=col_mask, other=0.0).to(tl.float32)
                box2_y2 = tl.load(segment_boxes_ptr + box2_offsets + 3, mask=col_mask, other=0.0).to(tl.float32)

                box2_valid = (box2_x2 > box2_x1) & (box2_y2 > box2_y1)
                box2_area = (box2_x2 - box2_x1 + coord_offset) * (box2_y2 - box2_y1 + coord_offset)

                # Calculate intersection, empty when the boxes do not overlap
                inter_x1 = tl.maximum(box1_x1, box2_x1)
                inter_y1 = tl.maximum(box1_y1, box2_y1)
                inter_x2 = tl.minimum(box1_x2, box2_x2)
                inter_y2 = tl.minimum(box1_y2, box2_y2)
                inter_w = tl.where(inter_x2 >= inter_x1, inter_x2 - inter_x1 + coord_offset, 0.0)
                inter_h = tl.where(inter_y2 >= inter_y1, inter_y2 - inter_y1 + coord_offset, 0.0)
                inter_area = inter_w * inter_h

                # Degenerate boxes never overlap anything
                union_area = box1_area + box2_area - inter_area
                has_iou = box1_valid & box2_valid & (union_area > 0.0)
                iou = tl.where(has_iou, inter_area / union_area, 0.0)

                suppression_mask = (iou > iou_threshold) & col_mask
                tl.store(segment_keep_ptr + col_offsets, False, mask=suppression_mask)

            # All stores of this row must land before the next row reads its keep flag
            tl.debug_barrier()


def per_class_suppression_launcher(
    boxes: torch.Tensor,
    keep_mask: torch.Tensor,
    iou_threshold: float,
    is_normalized: bool,
) -> None:
    """Launch the per-class suppression kernel, one program per segment.

    Args:
        boxes: Candidate boxes sorted by descending score within each segment, shape: (S, K, 4).
        keep_mask: Candidate validity on entry, survivors on exit, shape: (S, K), dtype: bool.
        iou_threshold: IoU threshold for suppression.
        is_normalized: Whether coordinates are normalized (otherwise pixel-inclusive).
    """
    assert boxes.dim() == 3 and boxes.size(2) == 4, "Boxes must have shape (S, K, 4)"  # noqa: S101
    assert keep_mask.shape == boxes.shape[:2], "Keep mask must have shape (S, K)"  # noqa: S101
    assert keep_mask.dtype == torch.bool, "Keep mask must be a bool tensor"  # noqa: S101
    assert boxes.stride(2) == 1, "Box coordinates must be contiguous"  # noqa: S101
    assert keep_mask.stride(1) == 1, "Keep mask rows must be contiguous"  # noqa: S101

    num_segments, num_candidates, _ = boxes.shape
    if num_segments == 0 or num_candidates < 2:  # noqa: PLR2004
        return

    grid = (num_segments,)
    _per_class_suppression_kernel[grid](
        # Tensors
        boxes_ptr=boxes,
        keep_mask_ptr=keep_mask,
        # Scalars
        num_candidates=num_candidates,
        iou_threshold=iou_threshold,
        coord_offset=0.0 if is_normalized else 1.0,
        # Strides
        boxes_segment_stride=boxes.stride(0),
        boxes_stride=boxes.stride(1),
        keep_mask_segment_stride=keep_mask.stride(0),
    )
