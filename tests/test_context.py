"""Tests for the request-scoped identity."""

from __future__ import annotations

import asyncio

import pytest

from convo_memory.context import clear_identity, current_identity, identity_scope, set_identity
from convo_memory.records import Identity


def test_set_get_clear():
    assert current_identity() is None
    set_identity("alice", "red")
    assert current_identity() == Identity("alice", "red")
    clear_identity()
    assert current_identity() is None


def test_empty_strings_count_as_unset():
    set_identity("", "")
    assert current_identity() == Identity(None, None)


def test_scope_restores_previous_identity():
    set_identity("outer", "team")
    with identity_scope("inner", None) as identity:
        assert identity == Identity("inner", None)
        assert current_identity().user_id == "inner"
    assert current_identity() == Identity("outer", "team")


def test_empty_scope_keeps_current_identity():
    set_identity("outer", None)
    with identity_scope(None, None):
        assert current_identity().user_id == "outer"


@pytest.mark.asyncio
async def test_concurrent_tasks_do_not_share_identity():
    seen = {}

    async def request(user: str) -> None:
        with identity_scope(user, f"{user}-team"):
            await asyncio.sleep(0)
            seen[user] = current_identity()

    await asyncio.gather(*(request(u) for u in ("alice", "bob", "carol")))
    assert seen["alice"] == Identity("alice", "alice-team")
    assert seen["bob"] == Identity("bob", "bob-team")
    assert seen["carol"] == Identity("carol", "carol-team")
    assert current_identity() is None
