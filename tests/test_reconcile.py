"""Tests for replaying the durable log into the vector index."""

from __future__ import annotations

import pytest

from convo_memory.log_store import LogStore
from convo_memory.memory import MemoryManager
from convo_memory.reconcile import reload_all_from_log
from convo_memory.records import MemoryRecord


def _record(session: str, n: int, user: str = "alice", visibility: str = "team") -> MemoryRecord:
    return MemoryRecord(
        session_id=session,
        timestamp=n,
        user_message=f"question {n}",
        assistant_response=f"answer {n}",
        user_id=user,
        visibility=visibility,
        record_id=f"{user}-{session}-{n}",
    )


@pytest.fixture()
async def ready_index(index):
    await index.provision()
    return index


class TestReload:
    @pytest.mark.asyncio
    async def test_loads_every_user_and_session(self, log_store: LogStore, ready_index, chroma):
        await log_store.append(_record("s1", 1))
        await log_store.append(_record("s1", 2))
        await log_store.append(_record("s2", 3, user="bob"))

        report = await reload_all_from_log(log_store, ready_index)
        assert report.to_dict() == {"loaded": 3, "errors": 0, "skipped": 0}
        assert len(chroma.records) == 3

    @pytest.mark.asyncio
    async def test_running_twice_does_not_duplicate(self, log_store: LogStore, ready_index):
        await log_store.append(_record("s1", 1))
        await log_store.append(_record("s1", 2))

        await reload_all_from_log(log_store, ready_index)
        await reload_all_from_log(log_store, ready_index)
        assert await ready_index.count() == 2

    @pytest.mark.asyncio
    async def test_corrupt_file_counts_as_error(self, log_store: LogStore, ready_index):
        await log_store.append(_record("good", 1))
        log_store.session_path("alice", "bad").write_text("{oops")

        report = await reload_all_from_log(log_store, ready_index)
        assert report.loaded == 1
        assert report.errors == 1

    @pytest.mark.asyncio
    async def test_private_records_skipped(self, log_store: LogStore, ready_index, chroma):
        await log_store.append(_record("s1", 1, visibility="private"))
        await log_store.append(_record("s1", 2))

        report = await reload_all_from_log(log_store, ready_index)
        assert (report.loaded, report.skipped) == (1, 1)
        assert all(r["metadata"]["visibility"] == "team" for r in chroma.records.values())

    @pytest.mark.asyncio
    async def test_private_records_loaded_when_policy_off(self, log_store: LogStore, ready_index):
        await log_store.append(_record("s1", 1, visibility="private"))
        report = await reload_all_from_log(log_store, ready_index, private_json_only=False)
        assert report.loaded == 1

    @pytest.mark.asyncio
    async def test_index_failure_counts_file_as_error(self, log_store: LogStore, ready_index, chroma):
        await log_store.append(_record("s1", 1))
        chroma.fail_writes = True
        report = await reload_all_from_log(log_store, ready_index)
        assert (report.loaded, report.errors) == (0, 1)

    @pytest.mark.asyncio
    async def test_no_index_is_a_no_op(self, log_store: LogStore):
        await log_store.append(_record("s1", 1))
        report = await reload_all_from_log(log_store, None)
        assert report.to_dict() == {"loaded": 0, "errors": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_manager_reload_restores_purged_index(self, manager: MemoryManager, chroma):
        await manager.store_exchange("s1", "nginx", "reload it")
        for collection in chroma.collections.values():
            collection["records"].clear()

        report = await manager.reload_from_log()
        assert report.loaded == 1
        assert len(chroma.records) == 1

    @pytest.mark.asyncio
    async def test_undecodable_file_counts_as_error(self, log_store: LogStore, ready_index):
        await log_store.append(_record("good", 1))
        log_store.session_path("alice", "bad").write_bytes(b"\xff\xfe[garbage")

        report = await reload_all_from_log(log_store, ready_index)
        assert (report.loaded, report.errors) == (1, 1)
