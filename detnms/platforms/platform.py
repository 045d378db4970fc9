# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Detection of the device family suppression runs on."""

import enum
from dataclasses import dataclass

import torch


class PlatformEnum(enum.Enum):
    """Device families with a torch backend."""

    NVIDIA = enum.auto()
    AMD = enum.auto()
    XPU = enum.auto()
    CPU = enum.auto()


@dataclass(frozen=True)
class Platform:
    """Device family plus the torch device string inputs and workspaces are allocated on."""

    platform_enum: PlatformEnum
    device: str

    def name(self) -> str:
        return self.platform_enum.name

    def has_cuda(self) -> bool:
        """Whether the CUDA API is available, ROCm included, so the Triton suppression kernel can launch."""
        return self.platform_enum in (PlatformEnum.NVIDIA, PlatformEnum.AMD)


def detect_current_platform() -> Platform:
    if torch.cuda.is_available():
        # ROCm builds expose HIP devices through the CUDA API
        platform_enum = PlatformEnum.AMD if torch.version.hip is not None else PlatformEnum.NVIDIA
        return Platform(platform_enum, "cuda")

    if hasattr(torch, "xpu") and torch.xpu.is_available():
        return Platform(PlatformEnum.XPU, "xpu")

    return Platform(PlatformEnum.CPU, "cpu")
