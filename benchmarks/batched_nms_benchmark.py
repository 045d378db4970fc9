# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Batched multi-class NMS benchmark."""

import sys
from typing import Final

import click
import torch

from detnms import envs
from detnms.engine import BatchedNMSEngine, OutputVariant
from detnms.platforms import current_platform
from detnms.reference.vision.batched_nms import batched_nms as batched_nms_ref
from detnms.state import NMSConfig
from detnms.utils.benchmark import BenchmarkMetadata, benchmark_it
from detnms.utils.seed import seed_everything


def _create_inputs(
    batch_size: int, num_priors: int, num_loc_classes: int, num_classes: int, dtype: torch.dtype
) -> tuple[torch.Tensor, torch.Tensor]:
    # Normalized boxes with clusters of near duplicates, so suppression has work to do
    corners = torch.rand(batch_size, num_priors, num_loc_classes, 2) * 0.8
    sizes = torch.rand(batch_size, num_priors, num_loc_classes, 2) * 0.2 + 0.01
    boxes = torch.cat([corners, corners + sizes], dim=-1)
    num_duplicates = num_priors // 4
    if num_duplicates > 0:
        boxes[:, -num_duplicates:] = boxes[:, :num_duplicates] + 0.005
    scores = torch.rand(batch_size, num_priors, num_classes)
    return boxes.to(dtype), scores.to(dtype)


def _torchvision_batched_nms(
    boxes: torch.Tensor, scores: torch.Tensor, config: NMSConfig
) -> list[torch.Tensor]:
    from torchvision.ops import batched_nms as batched_nms_torchvision  # type: ignore[import-untyped]

    num_classes = scores.size(-1)
    keeps = []
    for item_boxes, item_scores in zip(boxes, scores, strict=True):
        # (P, L, 4) -> (P, C, 4), one box per (prior, class) pair
        class_boxes = item_boxes.expand(-1, num_classes, -1) if config.share_location else item_boxes
        flat_scores = item_scores.flatten()
        valid = flat_scores > config.score_threshold
        idxs = torch.arange(num_classes, device=scores.device).repeat(item_scores.size(0))
        keep = batched_nms_torchvision(class_boxes.reshape(-1, 4)[valid].float(), flat_scores[valid].float(), idxs[valid], config.iou_threshold)
        keeps.append(keep[: config.keep_top_k])
    return keeps


@click.command()
@click.option(
    "--batch-size",
    required=False,
    type=int,
    default=8,
    help="Number of images per batch",
)
@click.option(
    "--num-priors",
    required=False,
    type=int,
    default=2000,
    help="Number of candidate boxes per image",
)
@click.option(
    "--num-classes",
    required=False,
    type=int,
    default=16,
    help="Number of classes",
)
@click.option(
    "--share-location/--no-share-location",
    default=True,
    help="Whether all classes share one box per prior",
)
@click.option(
    "--top-k",
    required=False,
    type=int,
    default=200,
    help="Candidates kept per class before suppression",
)
@click.option(
    "--keep-top-k",
    required=False,
    type=int,
    default=100,
    help="Detections kept per image after suppression",
)
@click.option(
    "--score-threshold",
    required=False,
    type=float,
    default=0.05,
    help="Scores at or below this are ignored",
)
@click.option(
    "--iou-threshold",
    required=False,
    type=float,
    default=0.5,
    help="IoU threshold for boxes to be suppressed",
)
@click.option(
    "--dtype",
    required=False,
    type=click.Choice(["fp16", "fp32"]),
    default="fp32",
    help="Data type of boxes and scores",
)
@click.option(
    "--enable-ref",
    is_flag=True,
    default=envs.DETNMS_BENCH_ENABLE_ALL_REF,
    help="Flag to benchmark the (slow) PyTorch reference implementation",
)
@click.option(
    "--torchvision-ref",
    is_flag=True,
    default=envs.DETNMS_BENCH_ENABLE_ALL_REF,
    help="Flag to benchmark torchvision's batched_nms as a baseline",
)
@click.option(
    "--iteration-time-ms",
    required=False,
    type=int,
    default=10000,
    help="Time in milliseconds to run benchmark",
)
@click.option(
    "--warmup-time-ms",
    required=False,
    type=int,
    default=1000,
    help="Time in milliseconds to warmup before recording times",
)
@click.option(
    "--verbose",
    is_flag=True,
    help="Flag for printing verbose output",
)
@click.option(
    "--gpu",
    required=False,
    type=str,
    default=current_platform.device,
    help="Device to run on",
)
@click.option(
    "--csv",
    is_flag=True,
    help="Flag for printing results in CSV format",
)
def main(  # noqa: PLR0913
    batch_size: int,
    num_priors: int,
    num_classes: int,
    share_location: bool,
    top_k: int,
    keep_top_k: int,
    score_threshold: float,
    iou_threshold: float,
    dtype: str,
    enable_ref: bool,
    torchvision_ref: bool,
    iteration_time_ms: int,
    warmup_time_ms: int,
    verbose: bool,
    gpu: str,
    csv: bool,
) -> None:
    """Benchmark batched multi-class NMS.

    Args:
        batch_size: Number of images per batch.
        num_priors: Number of candidate boxes per image.
        num_classes: Number of classes.
        share_location: Whether all classes share one box per prior.
        top_k: Candidates kept per class before suppression.
        keep_top_k: Detections kept per image after suppression.
        score_threshold: Scores at or below this are ignored.
        iou_threshold: IoU threshold for boxes to be suppressed.
        dtype: Data type of boxes and scores.
        enable_ref: Flag to benchmark the PyTorch reference implementation.
        torchvision_ref: Flag to benchmark torchvision's batched_nms.
        iteration_time_ms: Time in milliseconds to run benchmark.
        warmup_time_ms: Time in milliseconds to warmup before recording times.
        verbose: Flag to indicate whether or not to print verbose output.
        gpu: Which gpu to run on.
        csv: Flag to indicate whether or not to print results in CSV format.
    """
    seed: Final = 0
    seed_everything(seed)

    device: Final = torch.device(gpu)
    torch.set_default_device(device)

    torch_dtype: Final = torch.float16 if dtype == "fp16" else torch.float32

    config = NMSConfig(
        share_location=share_location,
        background_label_id=-1,
        num_classes=num_classes,
        top_k=top_k,
        keep_top_k=keep_top_k,
        score_threshold=score_threshold,
        iou_threshold=iou_threshold,
        is_normalized=True,
    )
    boxes, scores = _create_inputs(batch_size, num_priors, config.num_loc_classes, num_classes, torch_dtype)

    engine = BatchedNMSEngine.from_fields(
        {
            "shareLocation": share_location,
            "backgroundLabelId": -1,
            "numClasses": num_classes,
            "topK": top_k,
            "keepTopK": keep_top_k,
            "scoreThreshold": config.score_threshold,
            "iouThreshold": config.iou_threshold,
            "isNormalized": True,
        },
        OutputVariant.FIXED,
    )
    engine.configure_static(boxes.shape[1:], scores.shape[1:], boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(batch_size), dtype=torch.uint8, device=device)

    metadata = BenchmarkMetadata(
        platform=current_platform.name(),
        batch_size=batch_size,
        params={
            "num_priors": num_priors,
            "num_classes": num_classes,
            "share_location": share_location,
            "top_k": top_k,
            "keep_top_k": keep_top_k,
            "dtype": dtype,
        },
    )

    # Accuracy check against the reference
    num_detections, nmsed_boxes, nmsed_scores, nmsed_classes = engine.enqueue(boxes, scores, workspace)
    ref_count, ref_boxes, ref_scores, ref_classes, _ = batched_nms_ref(boxes, scores, config)

    matched = (
        torch.equal(num_detections, ref_count)
        and torch.equal(nmsed_classes, ref_classes)
        and torch.equal(nmsed_scores, ref_scores)
        and torch.equal(nmsed_boxes, ref_boxes)
    )
    if not matched:
        print("WARNING: Reference and engine results differ!", file=sys.stderr)
        print(f"Ref detections: {ref_count.tolist()}, engine detections: {num_detections.tolist()}", file=sys.stderr)

        if verbose:
            print(f"Reference classes: {ref_classes}", file=sys.stderr)
            print(f"Engine classes: {nmsed_classes}", file=sys.stderr)
    else:
        print("Reference vs engine: Results matched exactly :)", file=sys.stderr)

    # Benchmark implementations
    results = [
        benchmark_it(
            lambda: engine.enqueue(boxes, scores, workspace),
            tag="detnms",
            metadata=metadata,
            iteration_time_ms=iteration_time_ms,
            warmup_time_ms=warmup_time_ms,
        )
    ]

    if enable_ref:
        results.append(
            benchmark_it(
                lambda: batched_nms_ref(boxes, scores, config),
                tag="PyTorch Reference",
                metadata=metadata,
                iteration_time_ms=iteration_time_ms,
                warmup_time_ms=warmup_time_ms,
            )
        )

    if torchvision_ref:
        results.append(
            benchmark_it(
                lambda: _torchvision_batched_nms(boxes, scores, config),
                tag="torchvision batched_nms (per image)",
                metadata=metadata,
                iteration_time_ms=iteration_time_ms,
                warmup_time_ms=warmup_time_ms,
            )
        )

    if csv:
        print(results[0].csv_header())
    else:
        print(f"Parameters: batch_size={batch_size}, {metadata.params}")

    for result in results:
        print(result.csv_row() if csv else result.summary())


if __name__ == "__main__":
    main()
