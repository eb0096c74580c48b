"""Exception types shared across adapters, synthesis and the cache.

A missing trend, document or artifact is not an error: lookups return None.
"""

from __future__ import annotations


class TrendSchemaError(Exception):
    """Base class for all engine errors."""


class AdapterUnavailable(TrendSchemaError):
    """The similarity backend or document store could not be reached."""


class SynthesisError(TrendSchemaError):
    """A synthesis job produced nothing cacheable."""


class IncompleteDataError(SynthesisError):
    """Required schema fields could not be populated from the content."""

    def __init__(self, message: str, missing: list[str] | None = None):
        super().__init__(message)
        self.missing = missing or []


class ValidationError(SynthesisError):
    """Synthesized markup failed schema.org structural validation."""

    def __init__(self, message: str, problems: list[str] | None = None):
        super().__init__(message)
        self.problems = problems or []


class FillTimeoutError(TrendSchemaError, TimeoutError):
    """A cache fill did not finish before its deadline."""
