# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Environment variables."""

import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    DETNMS_BENCH_ENABLE_ALL_REF: bool
    DETNMS_DISABLE_TRITON: bool
    DETNMS_ENABLE_TORCHVISION: bool


def _flag(name: str) -> Callable[[], bool]:
    return lambda: os.environ.get(name, "0").strip().lower() in ("1", "true")


environment_variables: dict[str, Callable[[], Any]] = {
    # Enable the torchvision reference implementation for all applicable benchmarks
    "DETNMS_BENCH_ENABLE_ALL_REF": _flag("DETNMS_BENCH_ENABLE_ALL_REF"),
    # Run the per-class suppression with PyTorch even when a CUDA device is available
    "DETNMS_DISABLE_TRITON": _flag("DETNMS_DISABLE_TRITON"),
    # Use torchvision's NMS for the per-class greedy step of the reference implementation
    "DETNMS_ENABLE_TORCHVISION": _flag("DETNMS_ENABLE_TORCHVISION"),
}


def __getattr__(name: str) -> Any:
    # lazy evaluation of environment variables
    if name in environment_variables:
        return environment_variables[name]()
    error_msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(error_msg)


def __dir__() -> list[str]:
    return list(environment_variables.keys())
