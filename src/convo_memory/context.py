"""
Request-scoped identity.

The acting user/team is held in a :class:`contextvars.ContextVar`, so every
asyncio task (and therefore every in-flight MCP request) sees its own value.
Setting the identity inside one request never leaks into a concurrent one.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator

from .records import Identity

_current: ContextVar[Identity | None] = ContextVar("convo_memory_identity", default=None)


def set_identity(user_id: str | None = None, team_id: str | None = None) -> Token:
    """Set the identity for the current context.  Empty strings count as unset."""
    return _current.set(Identity(user_id=user_id or None, team_id=team_id or None))


def clear_identity() -> None:
    _current.set(None)


def current_identity() -> Identity | None:
    return _current.get()


@contextmanager
def identity_scope(user_id: str | None = None, team_id: str | None = None) -> Iterator[Identity]:
    """Act as *user_id*/*team_id* for the duration of the block.

    The previous identity is restored on exit.  When neither argument is
    given the current identity is left untouched.
    """
    if not user_id and not team_id:
        yield current_identity() or Identity()
        return
    token = set_identity(user_id, team_id)
    try:
        yield _current.get()
    finally:
        _current.reset(token)
