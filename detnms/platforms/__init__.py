# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

import functools
import logging
from typing import TYPE_CHECKING, Any

from detnms.platforms.platform import Platform, detect_current_platform

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    current_platform: Platform


@functools.cache
def _detect() -> Platform:
    platform = detect_current_platform()
    logger.debug("Detected platform %s (device=%s)", platform.name(), platform.device)
    return platform


def __getattr__(name: str) -> Any:
    # Detection touches the CUDA runtime, defer it until first use
    if name == "current_platform":
        return _detect()

    error_msg = f"No attribute named '{name}' exists in {__name__}."
    raise AttributeError(error_msg)


__all__ = [
    "Platform",
    "current_platform",
]
