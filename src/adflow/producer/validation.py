"""
Request-shape validation for incoming events.

Deliberately shallow: the queue consumer re-validates, and normalizers own the
per-platform payload contracts. Swap in a stricter ``EventValidator`` if needed.
"""

from __future__ import annotations

from typing import Any, Callable, List

EventValidator = Callable[[Any], List[str]]


def validate_event(body: Any) -> List[str]:
    """Return validation error messages; empty list means valid."""
    if not isinstance(body, dict):
        return ["event must be a JSON object"]

    errors: List[str] = []
    source = body.get("source")
    if not isinstance(source, str) or not source.strip():
        errors.append("source is required and must be a non-empty string")

    if not isinstance(body.get("payload"), dict):
        errors.append("payload is required and must be an object")

    for optional in ("timestamp", "id"):
        if optional in body and body[optional] is not None and not isinstance(body[optional], str):
            errors.append(f"{optional} must be a string")
    return errors
