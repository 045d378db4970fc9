# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Lifecycle of a batched multi-class NMS engine instance.

An engine is built from host configuration fields (or restored from a capsule), bound to input
shapes and dtypes, asked for its workspace size, and then run once per batch:

    engine = BatchedNMSEngine.from_fields(fields, OutputVariant.MERGED)
    engine.configure_dynamic(boxes.shape, scores.shape, boxes.dtype, scores.dtype)
    workspace = torch.empty(engine.get_workspace_size(batch_size), dtype=torch.uint8, device=device)
    (merged,) = engine.enqueue(boxes, scores, workspace)

Both binding modes may be used with either output variant.
"""

import enum
import logging
from collections.abc import Mapping, Sequence
from typing import Any, Final

import torch

from detnms.capsule import SERIALIZATION_SIZE, deserialize_state, serialize_state
from detnms.config import parse_engine_state
from detnms.errors import ConfigError
from detnms.ops.vision.batched_nms import batched_nms
from detnms.ops.vision.encoding import FixedShapeEncoding, MergedEncoding, OutputEncoding
from detnms.planner import (
    Dims,
    infer_dynamic_output_shape,
    plan_dynamic,
    plan_static,
    resolve_precision,
    state_workspace_size,
    static_output_shapes,
    validate_parameters,
)
from detnms.state import EngineState, Precision, RuntimeShape

logger = logging.getLogger(__name__)


class OutputVariant(enum.Enum):
    """Output layout of an engine."""

    # count, boxes, scores, classes
    FIXED = "fixed"
    # one int32 [B, keep_top_k, 3] tensor
    MERGED = "merged"


_ENCODINGS: Final[dict[OutputVariant, OutputEncoding]] = {
    OutputVariant.FIXED: FixedShapeEncoding(),
    OutputVariant.MERGED: MergedEncoding(),
}


class BatchedNMSEngine:
    """Batched multi-class NMS bound to one configuration."""

    def __init__(self, state: EngineState, variant: OutputVariant = OutputVariant.MERGED) -> None:
        self._state = state
        self._variant = variant
        self._encoding = _ENCODINGS[variant]
        # Batch size of the last workspace query, or the constant batch of a dynamic bind
        self._workspace_batch_size: int | None = None

    @classmethod
    def from_fields(cls, fields: Mapping[str, Any], variant: OutputVariant = OutputVariant.MERGED) -> "BatchedNMSEngine":
        """Create an unbound engine from host configuration fields.

        Raises:
            ConfigMissingField: if a required field is absent.
            ConfigTypeMismatch: if a field has the wrong type.
        """
        return cls(parse_engine_state(fields), variant)

    @classmethod
    def from_state(cls, state: EngineState, variant: OutputVariant = OutputVariant.MERGED) -> "BatchedNMSEngine":
        """Create an engine owning an independent copy of `state`."""
        return cls(state.copy(), variant)

    @classmethod
    def deserialize(cls, data: bytes, variant: OutputVariant = OutputVariant.MERGED) -> "BatchedNMSEngine":
        """Restore an engine from a capsule produced by `serialize`.

        Raises:
            CorruptStateError: if the capsule cannot be decoded.
        """
        return cls(deserialize_state(data), variant)

    def clone(self) -> "BatchedNMSEngine":
        """Independent engine with the same configuration, bound shape and precision."""
        engine = BatchedNMSEngine.from_state(self._state, self._variant)
        engine._workspace_batch_size = self._workspace_batch_size
        return engine

    @property
    def state(self) -> EngineState:
        """Snapshot of the engine state."""
        return self._state.copy()

    @property
    def variant(self) -> OutputVariant:
        return self._variant

    @property
    def num_outputs(self) -> int:
        return self._encoding.num_outputs

    def supports_dtype_combination(self, box_dtype: torch.dtype, score_dtype: torch.dtype) -> bool:
        """Whether boxes and scores of these dtypes can be processed."""
        try:
            resolve_precision(box_dtype, score_dtype)
        except ConfigError:
            return False
        return True

    def get_output_shapes(self) -> list[tuple[int, ...]]:
        """Per-item output shapes of the fixed-shape variant: count, boxes, scores, classes."""
        self._require_variant(OutputVariant.FIXED, "get_output_shapes")
        return static_output_shapes(self._state.config)

    def infer_output_dims(self, box_dims: Dims, score_dims: Dims) -> tuple[int | None, int, int]:
        """Output dims of the merged variant for possibly symbolic input dims.

        Raises:
            ShapeError: if constant input dims contradict the configuration.
        """
        self._require_variant(OutputVariant.MERGED, "infer_output_dims")
        output_dims, _ = infer_dynamic_output_shape(self._state.config, box_dims, score_dims)
        return output_dims

    def output_dtypes(self) -> list[torch.dtype]:
        """Dtypes of the output tensors for the bound precision."""
        return self._encoding.output_dtypes(self._state.precision.torch_dtype)

    def configure_static(
        self, box_dims: Dims, score_dims: Dims, box_dtype: torch.dtype, score_dtype: torch.dtype
    ) -> None:
        """Bind per-item input dims and dtypes.

        Args:
            box_dims: `(num_priors, num_loc_classes, 4)`.
            score_dims: `(num_priors, num_classes)` or `(num_priors, num_classes, 1)`.
            box_dtype: Dtype of the boxes.
            score_dtype: Dtype of the scores.

        Raises:
            ConfigError: for out-of-range parameters or unsupported dtypes.
            ShapeError: for dims that do not fit the configuration.
        """
        validate_parameters(self._state)
        precision = resolve_precision(box_dtype, score_dtype)
        self._bind(plan_static(self._state.config, box_dims, score_dims), precision)
        self._workspace_batch_size = None

    def configure_dynamic(
        self, box_dims: Dims, score_dims: Dims, box_dtype: torch.dtype, score_dtype: torch.dtype
    ) -> None:
        """Bind input dims including the batch, `(batch, num_priors * num_loc_classes, 4)` boxes and
        `(batch, num_priors, num_classes[, 1])` scores.

        Raises:
            ConfigError: for out-of-range parameters or unsupported dtypes.
            ShapeError: for dims that do not fit the configuration.
        """
        validate_parameters(self._state)
        precision = resolve_precision(box_dtype, score_dtype)
        self._bind(plan_dynamic(self._state.config, box_dims, score_dims), precision)
        batch_dim = box_dims[0]
        self._workspace_batch_size = batch_dim if batch_dim is not None and batch_dim >= 0 else None

    def get_workspace_size(self, batch_size: int) -> int:
        """Scratch bytes needed to run a batch of `batch_size` items.

        Later calls to `enqueue` with a larger batch are rejected.

        Raises:
            ConfigError: if the engine is not bound yet or `batch_size` is negative.
        """
        workspace_size = state_workspace_size(self._state, batch_size)
        self._workspace_batch_size = batch_size
        return workspace_size

    def enqueue(  # noqa: PLR0913
        self,
        boxes: torch.Tensor,
        scores: torch.Tensor,
        workspace: torch.Tensor,
        image_size: tuple[float, float] | None = None,
        outputs: Sequence[torch.Tensor] | None = None,
        stream: torch.cuda.Stream | None = None,
    ) -> tuple[torch.Tensor, ...]:
        """Run suppression for one batch.

        Args:
            boxes: Boxes of the batch, laid out as bound.
            scores: Scores of the batch, laid out as bound.
            workspace: Contiguous uint8 tensor of at least `get_workspace_size(batch)` bytes.
            image_size: (Optional) `(height, width)` to clip pixel coordinates against.
            outputs: (Optional) preallocated outputs to write into.
            stream: (Optional) CUDA stream to launch on; work is asynchronous to the host then.

        Returns:
            The output tensors of the engine variant.

        Raises:
            RuntimeShapeMismatch: if inputs, workspace, or outputs disagree with the bound state, or if
                the batch is larger than the one the workspace was sized for.
        """
        if stream is None:
            return self._run(boxes, scores, workspace, image_size, outputs)

        with torch.cuda.stream(stream):
            return self._run(boxes, scores, workspace, image_size, outputs)

    def _run(
        self,
        boxes: torch.Tensor,
        scores: torch.Tensor,
        workspace: torch.Tensor,
        image_size: tuple[float, float] | None,
        outputs: Sequence[torch.Tensor] | None,
    ) -> tuple[torch.Tensor, ...]:
        return batched_nms(
            self._state, boxes, scores, workspace, self._encoding, image_size, outputs, self._workspace_batch_size
        )

    def serialize(self) -> bytes:
        return serialize_state(self._state)

    def get_serialization_size(self) -> int:
        return SERIALIZATION_SIZE

    def _bind(self, runtime_shape: RuntimeShape, precision: Precision) -> None:
        self._state.runtime_shape = runtime_shape
        self._state.precision = precision
        logger.debug("Engine bound (%s): %s, precision=%s", self._variant.value, runtime_shape, precision.name)

    def _require_variant(self, variant: OutputVariant, operation: str) -> None:
        if self._variant != variant:
            msg = f"{operation} is only available on {variant.value} engines (this engine is {self._variant.value})"
            raise ConfigError(msg)
