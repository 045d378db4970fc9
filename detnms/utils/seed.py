# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Seeding for reproducible tests and benchmarks."""

import random

import numpy as np
import torch


def seed_everything(seed: int) -> None:
    """Seed the Python, NumPy and PyTorch (all devices) random number generators."""
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
