"""
Durable, file-backed record log: the source of truth for memory.

Layout::

    <root>/<user>/<session>.json     # JSON array of records

Each append reads the session file, appends the record and atomically
rewrites the whole array.  Appends to the same ``(user, session)`` pair are
serialised with a per-key :class:`asyncio.Lock`, so concurrent writers in one
process cannot lose updates.  Separate processes sharing a directory are not
coordinated.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import weakref
from pathlib import Path

import aiofiles
import aiofiles.os

from .records import MemoryRecord

logger = logging.getLogger(__name__)

SESSION_SUFFIX = ".json"

_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")


class LogCorruptionError(Exception):
    """A session file exists but does not hold a JSON array of records."""


def safe_segment(name: str) -> str:
    """Make *name* usable as a single path component.

    The mapping is lossy (``"a/b"`` and ``"a_b"`` share a file), so session
    ids arriving from outside are checked with :func:`check_session_id`.
    """
    cleaned = _UNSAFE.sub("_", name)
    if not cleaned.strip("."):
        cleaned = "_" * max(len(cleaned), 1)
    return cleaned


def check_session_id(session_id: str) -> str:
    """Return *session_id* if it maps to its own file name, else raise ``ValueError``."""
    if safe_segment(session_id) != session_id:
        raise ValueError(
            f"invalid session id {session_id!r}: use letters, digits, '.', '_' or '-'"
        )
    return session_id


class LogStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        # Entries vanish once no coroutine holds or waits on the lock.
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def user_dir(self, user_id: str) -> Path:
        return self.root / safe_segment(user_id)

    def session_path(self, user_id: str, session_id: str) -> Path:
        return self.user_dir(user_id) / f"{safe_segment(session_id)}{SESSION_SUFFIX}"

    def _lock_for(self, user_id: str, session_id: str) -> asyncio.Lock:
        key = (safe_segment(user_id), safe_segment(session_id))
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, record: MemoryRecord) -> bool:
        """Append *record* to its owner's session file.

        Returns ``False`` if the file could not be written.  A missing file
        starts a new session; a corrupt one is moved aside and replaced.
        """
        user_id = record.user_id or ""
        path = self.session_path(user_id, record.session_id)
        async with self._lock_for(user_id, record.session_id):
            try:
                await aiofiles.os.makedirs(path.parent, exist_ok=True)
                try:
                    existing = await self._read_raw(path)
                except FileNotFoundError:
                    existing = []
                except LogCorruptionError as exc:
                    backup = path.with_name(f"{path.name}.corrupt-{int(time.time() * 1000)}")
                    logger.warning("Corrupt session file %s (%s); moved to %s", path, exc, backup.name)
                    await aiofiles.os.rename(path, backup)
                    existing = []

                existing.append(record.to_dict())
                await self._write_raw(path, existing)
            except OSError as exc:
                logger.error("Failed to write session file %s: %s", path, exc)
                return False
        return True

    async def delete_session(self, user_id: str, session_id: str) -> bool:
        """Remove a session file.  Returns ``False`` when it did not exist."""
        path = self.session_path(user_id, session_id)
        async with self._lock_for(user_id, session_id):
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                return False
        return True

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_users(self) -> list[str]:
        """Directory names under the root that hold session files."""
        try:
            names = await aiofiles.os.listdir(self.root)
        except FileNotFoundError:
            return []
        users = []
        for name in sorted(names):
            if await aiofiles.os.path.isdir(self.root / name):
                users.append(name)
        return users

    async def session_files(self, user_id: str) -> list[Path]:
        user_dir = self.user_dir(user_id)
        try:
            names = await aiofiles.os.listdir(user_dir)
        except (FileNotFoundError, NotADirectoryError):
            return []
        return [user_dir / name for name in sorted(names) if name.endswith(SESSION_SUFFIX)]

    async def list_sessions(self, user_id: str) -> list[str]:
        return [path.name[: -len(SESSION_SUFFIX)] for path in await self.session_files(user_id)]

    async def read_session_file(self, path: Path) -> list[MemoryRecord]:
        """Parse one session file.  Raises :class:`LogCorruptionError`."""
        raw = await self._read_raw(path)
        try:
            return [MemoryRecord.from_dict(item) for item in raw]
        except (TypeError, ValueError, AttributeError) as exc:
            raise LogCorruptionError(f"{path.name}: invalid record ({exc})") from exc

    async def scan(self, user_id: str, session_id: str | None = None) -> list[MemoryRecord]:
        """Records for one session, or for every session of *user_id*.

        Sessions are read in file-name order; records keep append order.
        Missing or unreadable files contribute nothing.
        """
        if session_id is not None:
            paths = [self.session_path(user_id, session_id)]
        else:
            paths = await self.session_files(user_id)

        records: list[MemoryRecord] = []
        for path in paths:
            try:
                records.extend(await self.read_session_file(path))
            except FileNotFoundError:
                continue
            except (OSError, LogCorruptionError) as exc:
                logger.warning("Skipping unreadable session file %s: %s", path, exc)
        return records

    # ------------------------------------------------------------------
    # Raw file I/O
    # ------------------------------------------------------------------

    @staticmethod
    async def _read_raw(path: Path) -> list[dict]:
        async with aiofiles.open(path, "r", encoding="utf-8") as fh:
            try:
                content = await fh.read()
            except UnicodeDecodeError as exc:
                raise LogCorruptionError(f"{path.name}: not UTF-8 ({exc.reason})") from exc
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise LogCorruptionError(f"{path.name}: {exc}") from exc
        if not isinstance(data, list):
            raise LogCorruptionError(f"{path.name}: expected a JSON array")
        return data

    @staticmethod
    async def _write_raw(path: Path, data: list[dict]) -> None:
        tmp = path.with_name(f"{path.name}.tmp")
        async with aiofiles.open(tmp, "w", encoding="utf-8") as fh:
            await fh.write(json.dumps(data, indent=2, ensure_ascii=False))
        await aiofiles.os.replace(tmp, path)
