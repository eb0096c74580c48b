"""Schema builder registry: one builder per synthesized schema type."""

from __future__ import annotations

from typing import Any, Callable

SchemaBuilder = Callable[..., dict[str, Any]]

SCHEMA_BUILDERS: dict[str, SchemaBuilder] = {}


def register_schema(name: str):
    """Decorator to register a JSON-LD builder for a schema type."""

    def decorator(fn):
        SCHEMA_BUILDERS[name] = fn
        return fn

    return decorator


# Import implementations to trigger registration
from trendschema.synthesize import builders  # noqa: E402, F401
