"""Request identifiers carried in a request context."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

__all__ = ["HEADER_KEY", "set_in_context", "from_context"]

HEADER_KEY = "Athens-Request-ID"
"""Header used to pass request ids into logs and outbound requests."""

_CONTEXT_KEY = "modproxy.request_id"


def set_in_context(ctx: Mapping[str, Any], request_id: str) -> dict[str, Any]:
    """Return a copy of ``ctx`` that holds ``request_id``."""
    return {**ctx, _CONTEXT_KEY: request_id}


def from_context(ctx: Mapping[str, Any]) -> str:
    """Return the request id held in ``ctx``, or an empty string."""
    value = ctx.get(_CONTEXT_KEY)
    return value if isinstance(value, str) else ""