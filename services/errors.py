"""Exception taxonomy shared by the registry, dispatch and estimation services."""
from __future__ import annotations

from typing import Sequence


class MEFLabError(Exception):
    """Base class for errors raised by MEFLab services."""


class ConfigurationError(MEFLabError, ValueError):
    """Input tables or settings are malformed, empty, or filter down to nothing."""


class NumericError(MEFLabError, ArithmeticError):
    """A dispatch computation degenerated (zero capacity, non-finite draw)."""

    def __init__(self, message: str, run_id: int | None = None) -> None:
        super().__init__(message)
        self.run_id = run_id


class OutOfRangeError(MEFLabError, ValueError):
    """Load values fall outside a dispatch curve's cumulative-capacity domain."""

    def __init__(
        self,
        message: str,
        run_id: int | None = None,
        loads_mw: Sequence[float] = (),
    ) -> None:
        super().__init__(message)
        self.run_id = run_id
        self.loads_mw = tuple(float(v) for v in loads_mw)


class EmptySelectionError(MEFLabError, LookupError):
    """A territory or run selection matched no data.

    Kept separate from computation failures so callers can report
    "no data for this selection" instead of an error.
    """
