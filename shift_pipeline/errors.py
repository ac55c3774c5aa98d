"""Exceptions raised by the shift derivation and reconciliation pipeline.

Per-item data gaps (unmapped catalog pairs, sold items without a recipe) are
not exceptions; they are returned as warning lists and logged.
"""

from datetime import date
from typing import Optional, Sequence


class PipelineError(Exception):
    """Base class for pipeline failures."""


class InvalidDateError(PipelineError):
    """Raised when a business date is missing or not ``YYYY-MM-DD``."""

    def __init__(self, value: Optional[str]):
        self.value = value
        if value is None or value == "":
            message = "date is required (YYYY-MM-DD)"
        else:
            message = f"invalid date {value!r}, expected YYYY-MM-DD"
        super().__init__(message)


class UpstreamUnavailableError(PipelineError):
    """Raised when the receipt source cannot be read; the rebuild is aborted."""


class CycleDepthExceededError(PipelineError):
    """Raised when prep expansion revisits a recipe or goes too deep."""

    def __init__(self, sold_item: str, path: Sequence[str], max_depth: int):
        self.sold_item = sold_item
        self.path = list(path)
        self.max_depth = max_depth
        super().__init__(
            f"recipe expansion for '{sold_item}' aborted: "
            f"{' -> '.join(self.path)} (max depth {max_depth})"
        )


class RebuildInProgressError(PipelineError):
    """Raised when a rebuild for the same shift date is already running."""

    def __init__(self, shift_date: date):
        self.shift_date = shift_date
        super().__init__(f"rebuild in progress for {shift_date.isoformat()}")
