# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""PyTorch reference implementation of batched multi-class non-max suppression."""

from typing import Final

import torch

from detnms import envs
from detnms.state import NMSConfig, Precision

_BOX_CODE_SIZE: Final = 4


def _calculate_iou(box: torch.Tensor, boxes: torch.Tensor, is_normalized: bool) -> torch.Tensor:
    """Calculate IoU between one box and a set of boxes, in float32.

    Args:
        box: Tensor of shape (4,) in (x1, y1, x2, y2) format.
        boxes: Tensor of shape (M, 4) in (x1, y1, x2, y2) format.
        is_normalized: If False, widths and heights are pixel-inclusive.

    Returns:
        Tensor of shape (M,) containing IoU values.
    """
    offset = 0.0 if is_normalized else 1.0
    box = box.to(torch.float32)
    boxes = boxes.to(torch.float32)

    # Calculate areas
    area1 = (box[2] - box[0] + offset) * (box[3] - box[1] + offset)
    area2 = (boxes[:, 2] - boxes[:, 0] + offset) * (boxes[:, 3] - boxes[:, 1] + offset)  # (M,)

    # Calculate intersection coordinates
    inter_x1 = torch.maximum(box[0], boxes[:, 0])
    inter_y1 = torch.maximum(box[1], boxes[:, 1])
    inter_x2 = torch.minimum(box[2], boxes[:, 2])
    inter_y2 = torch.minimum(box[3], boxes[:, 3])

    # Calculate intersection area, empty when the boxes are disjoint
    zero = torch.zeros((), dtype=torch.float32, device=boxes.device)
    inter_w = torch.where(inter_x2 >= inter_x1, inter_x2 - inter_x1 + offset, zero)
    inter_h = torch.where(inter_y2 >= inter_y1, inter_y2 - inter_y1 + offset, zero)
    inter_area = inter_w * inter_h

    # Calculate union area
    union_area = area1 + area2 - inter_area

    # Degenerate boxes have no overlap with anything
    box_valid = (box[2] > box[0]) & (box[3] > box[1])
    boxes_valid = (boxes[:, 2] > boxes[:, 0]) & (boxes[:, 3] > boxes[:, 1])
    valid = box_valid & boxes_valid & (union_area > 0)

    safe_union = torch.where(valid, union_area, torch.ones_like(union_area))
    return torch.where(valid, inter_area / safe_union, zero)


def _sort_keys(scores: torch.Tensor, score_bits: int) -> torch.Tensor:
    """Float32 sort keys keeping `score_bits` mantissa bits of each score."""
    precision = Precision.from_dtype(scores.dtype)
    dropped_bits = precision.mantissa_bits - score_bits
    if dropped_bits <= 0:
        return scores.to(torch.float32)

    integer_dtype = torch.int16 if precision == Precision.HALF else torch.int32
    truncated = scores.contiguous().view(integer_dtype) & -(1 << dropped_bits)
    return truncated.view(scores.dtype).to(torch.float32)


def _greedy_nms_iterative(boxes: torch.Tensor, iou_threshold: float, is_normalized: bool) -> list[int]:
    """Greedy NMS over boxes that are already sorted by decreasing score.

    Returns:
        Positions (into `boxes`) of the kept boxes, in rank order.
    """
    if envs.DETNMS_ENABLE_TORCHVISION and is_normalized:
        from torchvision.ops.boxes import nms as nms_torchvision  # type: ignore[import-untyped]

        # Strictly decreasing dummy scores reproduce the given ranking
        rank_scores = -torch.arange(boxes.size(0), dtype=torch.float32, device=boxes.device)
        return nms_torchvision(boxes.to(torch.float32), rank_scores, iou_threshold).tolist()  # type: ignore[no-any-return]

    keep = []
    remaining = torch.arange(boxes.size(0), device=boxes.device)

    # Process boxes in order of decreasing score
    while remaining.numel() > 0:
        current = remaining[0]
        keep.append(int(current))

        if remaining.numel() == 1:
            break

        others = remaining[1:]
        ious = _calculate_iou(boxes[current], boxes[others], is_normalized)

        # Keep only boxes with IoU at or below threshold
        remaining = others[ious <= iou_threshold]

    return keep


def _clip(boxes: torch.Tensor, is_normalized: bool, image_size: tuple[float, float] | None) -> torch.Tensor:
    if is_normalized:
        return boxes.clamp(min=0.0, max=1.0)

    if image_size is None:
        return boxes.clamp(min=0.0)

    height, width = image_size
    upper = torch.tensor([width, height, width, height], dtype=boxes.dtype, device=boxes.device)
    return torch.minimum(boxes.clamp(min=0.0), upper)


def batched_nms(
    boxes: torch.Tensor,
    scores: torch.Tensor,
    config: NMSConfig,
    clip_boxes: bool = True,
    score_bits: int = 16,
    image_size: tuple[float, float] | None = None,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    """
    Performs batched multi-class non-maximum suppression, one batch item and one class at a time.

    Per class, boxes scoring strictly above ``score_threshold`` are ranked by score (truncated
    to ``score_bits`` mantissa bits, ties broken by lowest prior index), cut to ``top_k``, and
    greedily suppressed: a box is discarded when its IoU with a higher ranked kept box exceeds
    ``iou_threshold``. Survivors of all classes are then ordered by score (ties: lower class,
    then higher rank) and cut to ``keep_top_k``.

    Args:
        boxes (Tensor[B, P, L, 4]): boxes in ``(x1, y1, x2, y2)`` format, ``L`` is 1 for shared
            locations, otherwise ``num_classes``
        scores (Tensor[B, P, C]): per-class scores
        config (NMSConfig): NMS parameters
        clip_boxes (bool): whether to clip the boxes before suppression
        score_bits (int): mantissa bits of the scores used for ranking
        image_size (tuple, optional): ``(height, width)`` used to clip pixel coordinates

    Returns:
        Tuple of ``num_detections`` (int32 Tensor[B]), ``boxes`` (Tensor[B, K, 4]), ``scores``
        (Tensor[B, K]), ``classes`` (int32 Tensor[B, K]) and ``box_indices`` (int32 Tensor[B, K])
        where ``K = keep_top_k``; unused slots hold zeros, class -1 and index -1.
    """
    batch_size, num_priors, _, _ = boxes.shape
    keep_top_k = config.keep_top_k
    dtype = boxes.dtype
    device = boxes.device

    out_count = torch.zeros(batch_size, dtype=torch.int32, device=device)
    out_boxes = torch.zeros((batch_size, keep_top_k, _BOX_CODE_SIZE), dtype=dtype, device=device)
    out_scores = torch.zeros((batch_size, keep_top_k), dtype=dtype, device=device)
    out_classes = torch.full((batch_size, keep_top_k), -1, dtype=torch.int32, device=device)
    out_indices = torch.full((batch_size, keep_top_k), -1, dtype=torch.int32, device=device)

    for batch_idx in range(batch_size):
        item_boxes = _clip(boxes[batch_idx], config.is_normalized, image_size) if clip_boxes else boxes[batch_idx]

        # (score, class, prior, box) of every survivor, in class-major, rank order
        survivors = []
        for class_idx in range(config.num_classes):
            if class_idx == config.background_label_id:
                continue

            class_scores = scores[batch_idx, :, class_idx]
            class_boxes = item_boxes[:, 0 if config.share_location else class_idx]

            candidates = torch.nonzero(class_scores.to(torch.float32) > config.score_threshold).flatten()
            keys = _sort_keys(class_scores[candidates], score_bits)
            order = torch.sort(keys, descending=True, stable=True).indices
            candidates = candidates[order][: config.top_k]

            kept = _greedy_nms_iterative(class_boxes[candidates], config.iou_threshold, config.is_normalized)
            for position in kept:
                prior = int(candidates[position])
                survivors.append((float(class_scores[prior]), class_idx, prior, class_boxes[prior]))

        survivors.sort(key=lambda survivor: -survivor[0])
        survivors = survivors[:keep_top_k]

        out_count[batch_idx] = len(survivors)
        for slot, (score, class_idx, prior, box) in enumerate(survivors):
            out_boxes[batch_idx, slot] = box
            out_scores[batch_idx, slot] = score
            out_classes[batch_idx, slot] = class_idx
            out_indices[batch_idx, slot] = prior

    return out_count, out_boxes, out_scores, out_classes, out_indices
