"""Error taxonomy for Ecolysis.

  - InvalidParameter: malformed scenario, raised before any replicate runs
  - NumericOverflow:  abundance or allele ids beyond representable range;
                      fatal for the affected replicate only
  - ReplicateFailure: any other failure isolated to one replicate
"""

from __future__ import annotations

from typing import Any, Optional


class EcolysisError(Exception):
    """Base class for all Ecolysis errors."""


class InvalidParameter(EcolysisError, ValueError):
    """A scenario or sampler parameter violates a constraint.

    Attributes:
        field: Dotted path of the offending field (e.g. 'demography.survival[2]').
        constraint: Human-readable rule that was violated.
        value: The rejected value, if known.
    """

    def __init__(self, field: str, constraint: str, value: Any = None):
        self.field = field
        self.constraint = constraint
        self.value = value
        msg = f"{field}: {constraint}"
        if value is not None:
            msg += f" (got {value!r})"
        super().__init__(msg)


class NumericOverflow(EcolysisError, ArithmeticError):
    """A count exceeded the representable or configured range."""

    def __init__(self, quantity: str, value: int, limit: int):
        self.quantity = quantity
        self.value = value
        self.limit = limit
        super().__init__(f"{quantity} = {value} exceeds limit {limit}")


class ReplicateFailure(EcolysisError):
    """A replicate failed; kind names the exception class it raised."""

    def __init__(self, replicate: int, message: str, kind: Optional[str] = None):
        self.replicate = replicate
        self.kind = kind or "ReplicateFailure"
        super().__init__(f"replicate {replicate} failed ({self.kind}): {message}")
