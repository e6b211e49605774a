from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
# Client whose stage is being evaluated; set for the span of one unit of work.
client_scope_var: ContextVar[str | None] = ContextVar("client_scope", default=None)


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def get_client_scope() -> str | None:
    return client_scope_var.get()


@contextmanager
def client_scope(client_id: str) -> Iterator[None]:
    token = client_scope_var.set(client_id)
    try:
        yield
    finally:
        client_scope_var.reset(token)


def get_log_context() -> dict[str, str | None]:
    return {"correlation_id": get_correlation_id(), "client_id": get_client_scope()}
