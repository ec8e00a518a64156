from __future__ import annotations

import numbers
from typing import Optional


class DataError(ValueError):
    """Structural problem with an input dataset (kind, populations, metadata)."""


class ParameterError(ValueError):
    """A parameter lies outside its domain.

    Parameters are never clamped to a default; callers get the name and the
    offending value back.
    """

    def __init__(self, name: str, value: object, expected: str) -> None:
        self.name = name
        self.value = value
        self.expected = expected
        super().__init__(f"Parameter '{name}' = {value!r} must be {expected}")


class CancelledError(RuntimeError):
    """Raised when a cooperative cancel event is set mid-computation."""


def check_range(
    name: str,
    value: float,
    lo: float,
    hi: float,
) -> float:
    """Validate lo <= value <= hi and return value as float."""
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ParameterError(name, value, f"a number in [{lo}, {hi}]")
    if not (lo <= float(value) <= hi):
        raise ParameterError(name, value, f"in the range [{lo}, {hi}]")
    return float(value)


def check_int(name: str, value: int, minimum: int, maximum: Optional[int] = None) -> int:
    """Validate an integer parameter with an inclusive lower (and optional upper) bound."""
    if isinstance(value, bool) or not isinstance(value, numbers.Integral):
        raise ParameterError(name, value, "an integer")
    if value < minimum or (maximum is not None and value > maximum):
        if maximum is None:
            raise ParameterError(name, value, f"an integer >= {minimum}")
        raise ParameterError(name, value, f"an integer in [{minimum}, {maximum}]")
    return int(value)


def check_cancel(cancel) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledError("computation cancelled")
