"""Exception types raised by the tagging pipeline.

Every error carries the values needed to diagnose it without re-running
(offending dimensions, expected vs. actual lengths, device names).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path


class TaggerError(Exception):
    """Base class for all tagging errors."""


# -- Preprocessing ----------------------------------------------------------


class UnsupportedFormatError(TaggerError):
    """The input could not be decoded as an image."""

    def __init__(self, source: str, reason: str) -> None:
        super().__init__(f"Cannot decode image from {source}: {reason}")
        self.source = source
        self.reason = reason


class EmptyImageError(TaggerError):
    """The decoded image has a zero-sized dimension."""

    def __init__(self, width: int, height: int) -> None:
        super().__init__(f"Image has empty dimensions: {width}x{height}")
        self.width = width
        self.height = height


# -- Backend ----------------------------------------------------------------


class ModelLoadError(TaggerError):
    """The model graph could not be loaded on the requested device."""

    def __init__(self, model_path: Path | str, device: str, reason: str) -> None:
        super().__init__(f"Failed to load {model_path} on {device}: {reason}")
        self.model_path = str(model_path)
        self.device = device
        self.reason = reason


class ShapeMismatchError(TaggerError):
    """The input tensor does not match the session's expected input."""

    def __init__(self, expected: tuple[int | str | None, ...], actual: tuple[int, ...], detail: str = "") -> None:
        message = f"Input shape {actual} does not match expected {expected}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class BackendExecutionError(TaggerError):
    """The execution engine failed while running the graph."""

    def __init__(self, device: str, reason: str) -> None:
        super().__init__(f"Inference failed on {device}: {reason}")
        self.device = device
        self.reason = reason


# -- Labels / postprocessing ------------------------------------------------


class MalformedTableError(TaggerError):
    """The label table is empty or a row is invalid."""

    def __init__(self, reason: str, row: int | None = None) -> None:
        message = reason if row is None else f"Row {row}: {reason}"
        super().__init__(f"Malformed label table: {message}")
        self.reason = reason
        self.row = row


class LengthMismatchError(TaggerError):
    """The score vector and the label table disagree in length."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Score vector has {actual} entries but the label table has {expected}; "
            "the label file does not belong to this model"
        )
        self.expected = expected
        self.actual = actual


# -- Orchestration ----------------------------------------------------------


class PipelineNotReadyError(TaggerError):
    """The pipeline was used outside of its ready state."""

    def __init__(self, state: str, operation: str) -> None:
        super().__init__(f"Cannot {operation}: pipeline is {state}")
        self.state = state
        self.operation = operation
