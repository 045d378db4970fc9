# Copyright 2025 Stack AV Co.
# SPDX-License-Identifier: Apache-2.0

"""Errors raised by the NMS engine."""


class DetNMSError(ValueError):
    """Base class for all errors raised by detnms."""


class ConfigError(DetNMSError):
    """Bad, missing, or mistyped configuration field."""


class ConfigMissingField(ConfigError):
    """A required configuration field was not supplied."""


class ConfigTypeMismatch(ConfigError):
    """A configuration field was supplied with the wrong type."""


class ShapeError(DetNMSError):
    """Unsupported tensor rank/dimension combination found while binding shapes."""


class CorruptStateError(DetNMSError):
    """Serialized engine state could not be decoded."""


class RuntimeShapeMismatch(DetNMSError):
    """Inputs of a suppression call disagree with the bound shapes or the workspace."""
