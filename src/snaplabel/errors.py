"""Typed failures for the classification pipeline.

Every error carries the pipeline stage that produced it so callers can render
a single structured failure without inspecting exception chains.
"""

from __future__ import annotations

from enum import StrEnum


class Stage(StrEnum):
    RESOLUTION = "resolution"
    DECODE = "decode"
    PACKING = "packing"
    INFERENCE = "inference"


class ClassificationError(Exception):
    """Base class for stage-tagged classification failures."""

    stage: Stage = Stage.INFERENCE
    retryable: bool = True

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.stage} failed: {self.message}"


class SourceUnavailable(ClassificationError):
    """Raised when image bytes cannot be fetched or read."""

    stage = Stage.RESOLUTION


class DecodeError(ClassificationError):
    """Raised when image bytes are not a decodable JPEG."""

    stage = Stage.DECODE


class InvariantViolation(ClassificationError):
    """Raised when a decoded pixel buffer does not match its dimensions.

    This is a contract bug between decoder and packer, retrying will not help.
    """

    stage = Stage.PACKING
    retryable = False


class ModelNotReady(ClassificationError):
    """Raised when inference is requested on a model that is not loaded."""

    stage = Stage.INFERENCE


class InferenceError(ClassificationError):
    """Raised when the inference engine fails or rejects the input."""

    stage = Stage.INFERENCE
