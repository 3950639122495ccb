"""Opaque identifier generation for subscriptions and hooks."""

from uuid import uuid4


def new_id() -> str:
    """Return a fresh, process-unique opaque identifier."""
    return uuid4().hex
