# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Test batched multi-class non-max suppression."""

from typing import Any, Final

import pytest
import torch

from detnms.engine import BatchedNMSEngine, OutputVariant
from detnms.errors import RuntimeShapeMismatch
from detnms.kernels.vision.batched_nms import per_class_suppression_launcher
from detnms.ops.vision.batched_nms import _suppress_torch, box_iou, truncate_score_bits
from detnms.ops.vision.encoding import decode_merged
from detnms.planner import plan_state_workspace
from detnms.platforms import current_platform
from detnms.reference.vision.batched_nms import batched_nms as batched_nms_ref
from detnms.state import NMSConfig, Precision
from detnms.utils.seed import seed_everything

_BASE_FIELDS: Final[dict[str, Any]] = {
    "shareLocation": True,
    "backgroundLabelId": -1,
    "numClasses": 1,
    "topK": 100,
    "keepTopK": 50,
    "scoreThreshold": 0.1,
    "iouThreshold": 0.5,
    "isNormalized": True,
}


def _create_inputs(
    batch_size: int, num_priors: int, num_loc_classes: int, num_classes: int, dtype: torch.dtype = torch.float32
) -> tuple[torch.Tensor, torch.Tensor]:
    # Normalized boxes, the second half jittered copies of the first half so that suppression happens
    corners = torch.rand(batch_size, num_priors, num_loc_classes, 2) * 0.8
    sizes = torch.rand(batch_size, num_priors, num_loc_classes, 2) * 0.3 + 0.01
    boxes = torch.cat([corners, corners + sizes], dim=-1)
    num_copies = num_priors // 2
    if num_copies > 0:
        jitter = (torch.rand(batch_size, num_copies, num_loc_classes, 4) - 0.5) * 0.05
        boxes[:, num_priors - num_copies :] = boxes[:, :num_copies] + jitter
    scores = torch.rand(batch_size, num_priors, num_classes)
    return boxes.to(dtype), scores.to(dtype)


def _config_from_fields(fields: dict[str, Any]) -> NMSConfig:
    return BatchedNMSEngine.from_fields(fields).state.config


def _run_fixed(
    fields: dict[str, Any],
    boxes: torch.Tensor,
    scores: torch.Tensor,
    image_size: tuple[float, float] | None = None,
) -> tuple[torch.Tensor, ...]:
    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(boxes.size(0)), dtype=torch.uint8, device=boxes.device)
    return engine.enqueue(boxes, scores, workspace, image_size=image_size)


def _assert_matches_reference(outputs: tuple[torch.Tensor, ...], reference: tuple[torch.Tensor, ...]) -> None:
    num_detections, nmsed_boxes, nmsed_scores, nmsed_classes = outputs
    ref_count, ref_boxes, ref_scores, ref_classes, _ = reference

    torch.testing.assert_close(num_detections, ref_count, rtol=0, atol=0)
    torch.testing.assert_close(nmsed_classes, ref_classes, rtol=0, atol=0)
    torch.testing.assert_close(nmsed_scores, ref_scores, rtol=0, atol=0)
    torch.testing.assert_close(nmsed_boxes, ref_boxes, rtol=0, atol=0)


@pytest.mark.parametrize("batch_size", [1, 3])
@pytest.mark.parametrize("num_priors", [1, 64, 500])
@pytest.mark.parametrize("num_classes", [1, 6])
@pytest.mark.parametrize("share_location", [True, False])
@pytest.mark.parametrize("background_label_id", [-1, 0])
@pytest.mark.parametrize("seed", range(2))
def test_batched_nms_vs_reference(
    batch_size: int,
    num_priors: int,
    num_classes: int,
    share_location: bool,
    background_label_id: int,
    seed: int,
) -> None:
    """Test that the engine gives the same detections as the reference implementation."""
    seed_everything(seed)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {
        "shareLocation": share_location,
        "backgroundLabelId": background_label_id,
        "numClasses": num_classes,
    }
    config = _config_from_fields(fields)
    boxes, scores = _create_inputs(batch_size, num_priors, config.num_loc_classes, num_classes)

    outputs = _run_fixed(fields, boxes, scores)
    reference = batched_nms_ref(boxes, scores, config)

    _assert_matches_reference(outputs, reference)


@pytest.mark.parametrize("share_location", [True, False])
@pytest.mark.parametrize("dtype", [torch.float32, torch.float16])
@pytest.mark.parametrize("seed", range(2))
def test_merged_output_vs_reference(share_location: bool, dtype: torch.dtype, seed: int) -> None:
    """Test the merged output variant with dynamically bound shapes."""
    seed_everything(seed)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    batch_size: Final = 2
    num_priors: Final = 200
    num_classes: Final = 4

    fields = _BASE_FIELDS | {"shareLocation": share_location, "numClasses": num_classes, "keepTopK": 80}
    config = _config_from_fields(fields)
    boxes, scores = _create_inputs(batch_size, num_priors, config.num_loc_classes, num_classes, dtype)
    flat_boxes = boxes.reshape(batch_size, num_priors * config.num_loc_classes, 4)

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.MERGED)
    engine.configure_dynamic(flat_boxes.shape, scores.shape, flat_boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(batch_size), dtype=torch.uint8, device=device)
    (merged,) = engine.enqueue(flat_boxes, scores, workspace)

    assert merged.shape == (batch_size, 80, 3)
    assert merged.dtype == torch.int32

    ref_count, _, ref_scores, ref_classes, ref_indices = batched_nms_ref(boxes, scores, config)
    classes, merged_scores, box_indices = decode_merged(merged)

    torch.testing.assert_close(classes, ref_classes, rtol=0, atol=0)
    torch.testing.assert_close(merged_scores, ref_scores.to(torch.float32), rtol=0, atol=0)
    torch.testing.assert_close(box_indices, ref_indices, rtol=0, atol=0)
    torch.testing.assert_close((classes != -1).sum(dim=1, dtype=torch.int32), ref_count, rtol=0, atol=0)


@pytest.mark.parametrize("num_classes", [1, 3])
@pytest.mark.parametrize("seed", range(2))
def test_half_precision_vs_reference(num_classes: int, seed: int) -> None:
    """Test that half precision inputs give the same detections as the reference."""
    seed_everything(seed)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": num_classes}
    boxes, scores = _create_inputs(2, 300, 1, num_classes, torch.float16)

    outputs = _run_fixed(fields, boxes, scores)

    assert outputs[1].dtype == torch.float16
    assert outputs[2].dtype == torch.float16
    _assert_matches_reference(outputs, batched_nms_ref(boxes, scores, _config_from_fields(fields)))


@pytest.mark.parametrize("score_bits", [1, 4, 16, 23])
def test_score_bits_vs_reference(score_bits: int) -> None:
    """Test that truncated ranking keys agree with the reference."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 3, "scoreBits": score_bits}
    boxes, scores = _create_inputs(2, 256, 1, 3)

    outputs = _run_fixed(fields, boxes, scores)
    reference = batched_nms_ref(boxes, scores, _config_from_fields(fields), score_bits=score_bits)

    _assert_matches_reference(outputs, reference)


def test_pixel_coordinates_vs_reference() -> None:
    """Test non-normalized coordinates with clipping against the image size."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    image_size: Final = (300.0, 400.0)
    fields = _BASE_FIELDS | {"numClasses": 2, "isNormalized": False}
    boxes, scores = _create_inputs(2, 128, 1, 2)
    boxes = boxes * 500 - 50

    outputs = _run_fixed(fields, boxes, scores, image_size=image_size)
    reference = batched_nms_ref(boxes, scores, _config_from_fields(fields), image_size=image_size)

    _assert_matches_reference(outputs, reference)
    assert (outputs[1][..., 0::2] <= image_size[1]).all()
    assert (outputs[1][..., 1::2] <= image_size[0]).all()
    assert (outputs[1] >= 0).all()


def test_overlapping_boxes() -> None:
    """Test that of two strongly overlapping boxes only the higher scored one survives."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.01, 0.01, 0.11, 0.11]]]])
    scores = torch.tensor([[[0.9], [0.8]]])

    num_detections, nmsed_boxes, nmsed_scores, nmsed_classes = _run_fixed(_BASE_FIELDS, boxes, scores)

    assert num_detections.tolist() == [1]
    torch.testing.assert_close(nmsed_scores[0, 0], torch.tensor(0.9))
    torch.testing.assert_close(nmsed_boxes[0, 0], boxes[0, 0, 0])
    assert nmsed_classes[0, 0] == 0
    assert (nmsed_classes[0, 1:] == -1).all()
    assert (nmsed_scores[0, 1:] == 0).all()
    assert (nmsed_boxes[0, 1:] == 0).all()


def test_disjoint_boxes() -> None:
    """Test that disjoint boxes are all kept in descending score order."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]])
    scores = torch.tensor([[[0.8], [0.9]]])

    num_detections, nmsed_boxes, nmsed_scores, _ = _run_fixed(_BASE_FIELDS, boxes, scores)

    assert num_detections.tolist() == [2]
    torch.testing.assert_close(nmsed_scores[0, :2], torch.tensor([0.9, 0.8]))
    torch.testing.assert_close(nmsed_boxes[0, :2], torch.stack([boxes[0, 1, 0], boxes[0, 0, 0]]))


def test_background_class_is_skipped() -> None:
    """Test that the background class never produces detections."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 2, "backgroundLabelId": 0}
    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]])
    scores = torch.tensor([[[0.9, 0.0], [0.8, 0.05]]])

    num_detections, _, _, nmsed_classes = _run_fixed(fields, boxes, scores)

    assert num_detections.tolist() == [0]
    assert (nmsed_classes == -1).all()


def test_cross_class_merge_order() -> None:
    """Test that survivors of all classes are merged by score, ties going to the lower class."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 3}
    # One box per prior, shared by all classes
    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]])
    scores = torch.tensor([[[0.3, 0.7, 0.7], [0.6, 0.2, 0.95]]])

    num_detections, _, nmsed_scores, nmsed_classes = _run_fixed(fields, boxes, scores)

    assert num_detections.tolist() == [6]
    assert nmsed_classes[0, :6].tolist() == [2, 1, 2, 0, 0, 1]
    torch.testing.assert_close(nmsed_scores[0, :6], torch.tensor([0.95, 0.7, 0.7, 0.6, 0.3, 0.2]))


@pytest.mark.parametrize(("top_k", "keep_top_k"), [(0, 10), (10, 0), (0, 0)])
def test_zero_limits(top_k: int, keep_top_k: int) -> None:
    """Test that a zero candidate or detection limit gives no detections."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 2, "topK": top_k, "keepTopK": keep_top_k}
    boxes, scores = _create_inputs(2, 20, 1, 2)

    num_detections, nmsed_boxes, nmsed_scores, nmsed_classes = _run_fixed(fields, boxes, scores)

    assert num_detections.tolist() == [0, 0]
    assert nmsed_boxes.shape == (2, keep_top_k, 4)
    assert nmsed_scores.shape == (2, keep_top_k)
    assert (nmsed_classes == -1).all()


def test_keep_top_k_above_top_k() -> None:
    """Test that keep_top_k may exceed top_k, unused slots staying invalid."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"topK": 1, "keepTopK": 5}
    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]])
    scores = torch.tensor([[[0.8], [0.9]]])

    num_detections, _, nmsed_scores, nmsed_classes = _run_fixed(fields, boxes, scores)

    assert num_detections.tolist() == [1]
    torch.testing.assert_close(nmsed_scores[0, 0], torch.tensor(0.9))
    assert (nmsed_classes[0, 1:] == -1).all()


def test_score_equal_to_threshold_is_excluded() -> None:
    """Test that the score threshold is strict."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"scoreThreshold": 0.5}
    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]])
    scores = torch.tensor([[[0.5], [0.50001]]])

    num_detections, _, nmsed_scores, _ = _run_fixed(fields, boxes, scores)

    assert num_detections.tolist() == [1]
    torch.testing.assert_close(nmsed_scores[0, 0], torch.tensor(0.50001))


def test_monotonic_in_iou_threshold() -> None:
    """Test that raising the IoU threshold never reduces the number of detections of independent overlaps."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    # Disjoint pairs; the second box of pair i overlaps the first with IoU 0.02 / (0.02 + dw_i)
    num_pairs: Final = 8
    left = torch.arange(num_pairs) * 0.125
    extra_width = torch.rand(num_pairs) * 0.1
    first = torch.stack([left, torch.zeros(num_pairs), left + 0.02, torch.full((num_pairs,), 0.5)], dim=-1)
    second = first.clone()
    second[:, 2] += extra_width
    boxes = torch.cat([first, second]).view(1, 2 * num_pairs, 1, 4)
    scores = torch.cat([torch.full((num_pairs,), 0.9), torch.full((num_pairs,), 0.8)]).view(1, 2 * num_pairs, 1)

    counts = [
        _run_fixed(_BASE_FIELDS | {"iouThreshold": threshold}, boxes, scores)[0].item()
        for threshold in (0.0, 0.2, 0.4, 0.6, 0.8, 1.0)
    ]

    assert counts == sorted(counts)
    assert counts[0] == num_pairs
    assert counts[-1] == 2 * num_pairs


def test_score_bits_tie_break() -> None:
    """Test that scores equal after truncation are ranked by lowest prior index."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    # Identical boxes: only the first ranked one survives
    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.0, 0.0, 0.1, 0.1]]]])
    scores = torch.tensor([[[0.8], [0.80001]]])

    _, _, full_scores, _ = _run_fixed(_BASE_FIELDS | {"scoreBits": 23}, boxes, scores)
    _, _, truncated_scores, _ = _run_fixed(_BASE_FIELDS | {"scoreBits": 8}, boxes, scores)

    torch.testing.assert_close(full_scores[0, 0], torch.tensor(0.80001), rtol=0, atol=0)
    # The reported score is never truncated
    torch.testing.assert_close(truncated_scores[0, 0], torch.tensor(0.8), rtol=0, atol=0)


@pytest.mark.parametrize("clip_boxes", [True, False])
def test_clip_normalized(clip_boxes: bool) -> None:
    """Test that normalized boxes are clipped to the unit square only when enabled."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[[-0.5, -0.5, 0.5, 1.5]]]])
    scores = torch.tensor([[[0.9]]])

    _, nmsed_boxes, _, _ = _run_fixed(_BASE_FIELDS | {"clipBoxes": clip_boxes}, boxes, scores)

    expected = torch.tensor([0.0, 0.0, 0.5, 1.0]) if clip_boxes else boxes[0, 0, 0]
    torch.testing.assert_close(nmsed_boxes[0, 0], expected)


def test_clip_pixel_coordinates() -> None:
    """Test clipping of pixel coordinates with and without an image size."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"isNormalized": False}
    boxes = torch.tensor([[[[-10.0, 5.0, 250.0, 120.0]]]])
    scores = torch.tensor([[[0.9]]])

    _, with_image, _, _ = _run_fixed(fields, boxes, scores, image_size=(100.0, 200.0))
    _, without_image, _, _ = _run_fixed(fields, boxes, scores)

    torch.testing.assert_close(with_image[0, 0], torch.tensor([0.0, 5.0, 200.0, 100.0]))
    torch.testing.assert_close(without_image[0, 0], torch.tensor([0.0, 5.0, 250.0, 120.0]))


def test_workspace_purity_and_determinism() -> None:
    """Test that results do not depend on workspace contents and repeat bit for bit."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 4, "shareLocation": False}
    boxes, scores = _create_inputs(2, 100, 4, 4)

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace_size = engine.get_workspace_size(2)

    zeros = torch.zeros(workspace_size, dtype=torch.uint8)
    garbage = torch.full((workspace_size + 1000,), 0xFF, dtype=torch.uint8)

    first = engine.enqueue(boxes, scores, zeros)
    second = engine.enqueue(boxes, scores, garbage)
    third = engine.enqueue(boxes, scores, zeros)

    for a, b, c in zip(first, second, third, strict=True):
        assert torch.equal(a, b)
        assert torch.equal(a, c)


def test_intermediates_live_in_workspace() -> None:
    """Test that the ranked priors and merged scores are kept in their workspace segments."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[[0.0, 0.0, 0.1, 0.1]], [[0.2, 0.2, 0.3, 0.3]], [[0.4, 0.4, 0.5, 0.5]]]])
    scores = torch.tensor([[[0.3], [0.9], [0.6]]])

    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.zeros(engine.get_workspace_size(1), dtype=torch.uint8)

    num_detections, _, nmsed_scores, _ = engine.enqueue(boxes, scores, workspace)
    assert num_detections.tolist() == [3]

    layout = plan_state_workspace(engine.state, 1)
    pre_nms_indices = layout["pre_nms_indices"]
    ranked = workspace[pre_nms_indices.offset : pre_nms_indices.offset + 3 * 4].view(torch.int32)
    assert ranked.tolist() == [1, 2, 0]

    sort_scratch = layout["sort_scratch"]
    merged = workspace[sort_scratch.offset : sort_scratch.offset + 3 * 4].view(torch.float32)
    torch.testing.assert_close(merged, nmsed_scores[0, :3], rtol=0, atol=0)


def test_preallocated_outputs() -> None:
    """Test that results are written into caller provided outputs."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 2, "keepTopK": 10}
    boxes, scores = _create_inputs(2, 50, 1, 2)

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(2), dtype=torch.uint8)

    outputs = (
        torch.empty(2, dtype=torch.int32),
        torch.empty(2, 10, 4),
        torch.empty(2, 10),
        torch.empty(2, 10, dtype=torch.int32),
    )
    results = engine.enqueue(boxes, scores, workspace, outputs=outputs)

    for output, result, expected in zip(outputs, results, engine.enqueue(boxes, scores, workspace), strict=True):
        assert result is output
        assert torch.equal(output, expected)


def test_batch_mismatch_writes_nothing() -> None:
    """Test that a workspace sized for fewer items is rejected before any output is written."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[0.0, 0.0, 0.1, 0.1]]]).expand(2, 1, 1, 4).contiguous()
    scores = torch.full((2, 1, 1), 0.9)

    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(1), dtype=torch.uint8)

    sentinel: Final = 7
    outputs = (
        torch.full((2,), sentinel, dtype=torch.int32),
        torch.full((2, 50, 4), sentinel, dtype=torch.float32),
        torch.full((2, 50), sentinel, dtype=torch.float32),
        torch.full((2, 50), sentinel, dtype=torch.int32),
    )
    state_before = engine.state

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(boxes, scores, workspace, outputs=outputs)

    for output in outputs:
        assert (output == sentinel).all()
    assert engine.state == state_before


def test_batch_mismatch_with_equal_workspace_bytes() -> None:
    """Test that a batch larger than the workspace was sized for is rejected even when the bytes suffice."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"topK": 2, "keepTopK": 2}
    boxes = torch.tensor([[[0.0, 0.0, 0.1, 0.1]], [[0.5, 0.5, 0.6, 0.6]]]).expand(2, 2, 1, 4).contiguous()
    scores = torch.tensor([[0.9], [0.8]]).expand(2, 2, 1).contiguous()

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    assert engine.get_workspace_size(2) == engine.get_workspace_size(1)
    workspace = torch.empty(engine.get_workspace_size(1), dtype=torch.uint8)

    sentinel: Final = 7
    outputs = (
        torch.full((2,), sentinel, dtype=torch.int32),
        torch.full((2, 2, 4), sentinel, dtype=torch.float32),
        torch.full((2, 2), sentinel, dtype=torch.float32),
        torch.full((2, 2), sentinel, dtype=torch.int32),
    )

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(boxes, scores, workspace, outputs=outputs)

    for output in outputs:
        assert (output == sentinel).all()

    num_detections, _, _, _ = engine.enqueue(boxes[:1], scores[:1], workspace)
    assert num_detections.tolist() == [2]


def test_dynamic_bind_records_batch_size() -> None:
    """Test that a dynamic bind limits the batch until a larger workspace is requested."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes = torch.tensor([[[0.0, 0.0, 0.1, 0.1], [0.5, 0.5, 0.6, 0.6]]]).expand(2, 2, 4).contiguous()
    scores = torch.tensor([[[0.9], [0.8]]]).expand(2, 2, 1).contiguous()
    workspace = torch.empty(1 << 16, dtype=torch.uint8)

    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.MERGED)
    engine.configure_dynamic((1, 2, 4), (1, 2, 1), boxes.dtype, scores.dtype)
    clone = engine.clone()

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(boxes, scores, workspace)

    with pytest.raises(RuntimeShapeMismatch):
        clone.enqueue(boxes, scores, workspace)

    engine.get_workspace_size(2)
    (merged,) = engine.enqueue(boxes, scores, workspace)
    assert merged.shape == (2, 50, 3)


@pytest.mark.parametrize(
    "make_call",
    [
        # wrong dtype
        lambda boxes, scores: (boxes.half(), scores.half()),
        # wrong per-item size
        lambda boxes, scores: (boxes[:, :1], scores[:, :1]),
        # batch dims disagree
        lambda boxes, scores: (boxes, scores[:1]),
    ],
)
def test_runtime_shape_mismatch(make_call: Any) -> None:
    """Test that calls not matching the bound shapes are rejected."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes, scores = _create_inputs(2, 10, 1, 1)
    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(2), dtype=torch.uint8)

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(*make_call(boxes, scores), workspace)


def test_unbound_engine_is_rejected() -> None:
    """Test that suppression needs bound shapes."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.FIXED)
    boxes, scores = _create_inputs(1, 4, 1, 1)

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(boxes, scores, torch.empty(1 << 16, dtype=torch.uint8))


def test_bad_output_layout_is_rejected() -> None:
    """Test that mis-shaped caller outputs are rejected."""
    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes, scores = _create_inputs(1, 4, 1, 1)
    engine = BatchedNMSEngine.from_fields(_BASE_FIELDS, OutputVariant.MERGED)
    engine.configure_dynamic(boxes.reshape(1, 4, 4).shape, scores.shape, boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(1), dtype=torch.uint8)

    with pytest.raises(RuntimeShapeMismatch):
        engine.enqueue(boxes.reshape(1, 4, 4), scores, workspace, outputs=[torch.empty(1, 50, 3)])


@pytest.mark.parametrize(
    ("box1", "box2", "is_normalized", "expected"),
    [
        ([0.0, 0.0, 1.0, 1.0], [0.0, 0.0, 1.0, 1.0], True, 1.0),
        ([0.0, 0.0, 1.0, 1.0], [0.5, 0.0, 1.5, 1.0], True, 1.0 / 3.0),
        ([0.0, 0.0, 1.0, 1.0], [2.0, 2.0, 3.0, 3.0], True, 0.0),
        ([0.0, 0.0, 9.0, 9.0], [5.0, 0.0, 14.0, 9.0], False, 1.0 / 3.0),
        ([0.0, 0.0, 9.0, 9.0], [10.0, 0.0, 19.0, 9.0], False, 0.0),
        ([0.5, 0.5, 0.5, 0.9], [0.0, 0.0, 1.0, 1.0], True, 0.0),
        ([0.0, 0.0, 1.0, 1.0], [0.8, 0.8, 0.2, 0.2], True, 0.0),
    ],
)
def test_box_iou(box1: list[float], box2: list[float], is_normalized: bool, expected: float) -> None:
    """Test IoU for normalized, pixel-inclusive and degenerate boxes."""
    iou = box_iou(torch.tensor(box1), torch.tensor(box2), is_normalized)

    torch.testing.assert_close(iou, torch.tensor(expected))


def test_truncate_score_bits() -> None:
    """Test that truncation is the identity at full width and keeps the ordering otherwise."""
    scores = torch.rand(1000).sort(descending=True).values

    torch.testing.assert_close(truncate_score_bits(scores, Precision.FLOAT, 23), scores, rtol=0, atol=0)
    torch.testing.assert_close(truncate_score_bits(scores.half(), Precision.HALF, 16), scores.half().float(), rtol=0, atol=0)

    for score_bits in (1, 5, 12):
        keys = truncate_score_bits(scores, Precision.FLOAT, score_bits)
        assert keys.dtype == torch.float32
        assert (keys[:-1] >= keys[1:]).all()
        assert (keys <= scores).all()


@pytest.mark.skipif(not current_platform.has_cuda(), reason="The Triton kernel requires a CUDA device.")
@pytest.mark.parametrize("num_segments", [1, 7, 64])
@pytest.mark.parametrize("num_candidates", [2, 33, 400])
@pytest.mark.parametrize("is_normalized", [True, False])
@pytest.mark.parametrize("iou_threshold", [0.2, 0.5, 0.8])
def test_per_class_suppression_kernel(
    num_segments: int, num_candidates: int, is_normalized: bool, iou_threshold: float
) -> None:
    """Test that the Triton suppression kernel agrees with the PyTorch path."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    boxes, _ = _create_inputs(num_segments, num_candidates, 1, 1)
    boxes = boxes[:, :, 0].contiguous()
    if not is_normalized:
        boxes = boxes * 1000
    valid = torch.rand(num_segments, num_candidates) > 0.1  # noqa: PLR2004

    keep_triton = valid.clone()
    keep_torch = valid.clone()
    per_class_suppression_launcher(boxes, keep_triton, iou_threshold, is_normalized)
    _suppress_torch(boxes, keep_torch, iou_threshold, is_normalized)

    torch.testing.assert_close(keep_triton, keep_torch)


@pytest.mark.skipif(not current_platform.has_cuda(), reason="Streams require a CUDA device.")
def test_enqueue_on_stream() -> None:
    """Test that enqueueing on a side stream gives the same results."""
    seed_everything(0)

    device: Final = torch.device(current_platform.device)
    torch.set_default_device(device)

    fields = _BASE_FIELDS | {"numClasses": 3}
    boxes, scores = _create_inputs(2, 100, 1, 3)

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.FIXED)
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(2), dtype=torch.uint8)

    expected = engine.enqueue(boxes, scores, workspace)

    stream = torch.cuda.Stream()
    stream.wait_stream(torch.cuda.current_stream())
    results = engine.enqueue(boxes, scores, workspace, stream=stream)
    stream.synchronize()

    for result, reference in zip(results, expected, strict=True):
        assert torch.equal(result, reference)
