# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Timing helpers for the NMS benchmarks."""

import statistics
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import triton


@dataclass
class BenchmarkMetadata:
    """Where and with which problem size a benchmark ran."""

    platform: str
    batch_size: int
    params: dict[str, Any]


@dataclass
class BenchmarkResult:
    """Aggregated timings of one implementation, in milliseconds."""

    tag: str
    metadata: BenchmarkMetadata
    timings_ms: list[float]

    @property
    def num_iterations(self) -> int:
        return len(self.timings_ms)

    @property
    def median_ms(self) -> float:
        return statistics.median(self.timings_ms)

    @property
    def per_image_ms(self) -> float:
        """Median time divided over the batch items."""
        return self.median_ms / max(self.metadata.batch_size, 1)

    def csv_header(self) -> str:
        return ",".join(["tag", "platform", "num_iterations", "batch_size", *self.metadata.params, "median_ms", "per_image_ms"])

    def csv_row(self) -> str:
        values = [self.tag, self.metadata.platform, self.num_iterations, self.metadata.batch_size, *self.metadata.params.values()]
        return ",".join([*(str(value) for value in values), f"{self.median_ms:.3f}", f"{self.per_image_ms:.4f}"])

    def summary(self) -> str:
        return (
            f"{self.tag}: num_iterations={self.num_iterations}, min={min(self.timings_ms):.3f} ms, "
            f"max={max(self.timings_ms):.3f} ms, mean={statistics.fmean(self.timings_ms):.3f} ms, "
            f"median={self.median_ms:.3f} ms ({self.per_image_ms:.4f} ms/image)"
        )


def benchmark_it(
    fn: Callable[[], Any],
    tag: str,
    metadata: BenchmarkMetadata,
    iteration_time_ms: int = 10000,
    warmup_time_ms: int = 1000,
) -> BenchmarkResult:
    """Time a callable with `triton.testing.do_bench`.

    Args:
        fn: The function to benchmark.
        tag: The tag to identify the benchmark.
        metadata: Metadata for the benchmark.
        iteration_time_ms: Time in milliseconds to run the benchmark.
        warmup_time_ms: Time in milliseconds to warm up before recording times.

    Returns:
        All recorded timings of the run.
    """
    timings = triton.testing.do_bench(fn, warmup=warmup_time_ms, rep=iteration_time_ms, return_mode="all")
    return BenchmarkResult(tag=tag, metadata=metadata, timings_ms=list(timings))
