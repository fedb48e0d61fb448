from __future__ import annotations

import re
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

CORRELATION_HEADER = "x-correlation-id"

# Caller-supplied ids end up in logs and span attributes; anything else is replaced.
_VALID_CORRELATION_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    return str(uuid.uuid4())


def is_valid_correlation_id(candidate: str | None) -> bool:
    return candidate is not None and _VALID_CORRELATION_ID.match(candidate) is not None


def resolve_correlation_id(candidate: str | None) -> str:
    if candidate is not None and is_valid_correlation_id(candidate):
        return candidate
    return new_correlation_id()


@contextmanager
def correlation_scope(value: str | None = None) -> Iterator[str]:
    """Bind a correlation id for the duration of the block and yield it."""
    correlation_id = resolve_correlation_id(value)
    token = correlation_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id()}
