"""
MemoryManager: high-level API over the durable log and the vector index.

This is the main entry-point for applications that want to persist
conversation exchanges and recall them later.

Usage example::

    from convo_memory import MemoryManager

    memory = MemoryManager()
    await memory.initialize()

    await memory.store_exchange("s1", "fix nginx config", "edit /etc/nginx/nginx.conf")

    response = await memory.search("nginx", session_id="s1")
    for r in response.results:
        print(r.content, r.distance)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable

import aiofiles.os
import httpx

from . import prompt
from .config import Settings, load_settings
from .context import current_identity
from .intelligence import extract_context, extract_tags, generate_id, merge_unique
from .log_store import LogStore
from .reconcile import ReloadReport, reload_all_from_log
from .records import (
    Identity,
    KnowledgeSource,
    MemoryRecord,
    Visibility,
    active_user,
    resolve_owner,
)
from .search import SearchOrchestrator, SearchResponse
from .store import ChromaIndex, VectorIndexError

logger = logging.getLogger(__name__)

RECENT_MEMORIES = 3


class IndexState(str, enum.Enum):
    PENDING = "pending"
    READY = "ready"
    DEGRADED = "degraded"
    DISABLED = "disabled"


class StoreStatus(str, enum.Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class StoreResult:
    record: MemoryRecord
    status: StoreStatus
    logged: bool = False
    indexed: bool = False

    @property
    def ok(self) -> bool:
        return self.status is not StoreStatus.FAILED


@dataclass
class SessionDeletion:
    session_id: str
    removed: bool
    #: ``None`` when there was no index to purge.
    index_purged: bool | None = None


class MemoryManager:
    """
    Dual-backend conversation memory.

    Responsibilities
    ----------------
    * **Store** – Resolves ownership, appends the record to the durable log
      and, unless policy keeps it local, indexes it for vector search.
    * **Search** – Vector similarity with a keyword fallback over the active
      user's logs.  Never raises.
    * **Manage** – Lists, summarises and deletes the active user's sessions
      and replays the log into the index on demand.

    Parameters
    ----------
    settings:
        Runtime settings; loaded from the environment when omitted.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        _index: ChromaIndex | None = None,
        _log_store: LogStore | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self._log = _log_store or LogStore(self.settings.memory_dir)
        self._client = _index
        self.index_state = IndexState.PENDING
        if self._client is None and self.settings.chroma_enabled:
            try:
                self._client = ChromaIndex(
                    base_url=self.settings.chroma_base_url,
                    tenant=self.settings.chroma_tenant,
                    database=self.settings.chroma_database,
                    collection_name=self.settings.chroma_collection,
                    embedding_model=self.settings.embedding_model,
                    timeout=self.settings.request_timeout,
                    retries=self.settings.request_retries,
                )
            except (ValueError, httpx.InvalidURL) as exc:
                logger.error("Could not create vector index client: %s", exc)
                self.index_state = IndexState.DEGRADED
        elif self._client is None:
            self.index_state = IndexState.DISABLED
        self.searcher = SearchOrchestrator(
            self._log,
            default_user=self.settings.user_id,
            default_team=self.settings.team_id,
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()

    @property
    def log_store(self) -> LogStore:
        return self._log

    @property
    def index(self) -> ChromaIndex | None:
        """The vector index, or ``None`` when running JSON-only."""
        return self._client if self.index_state is IndexState.READY else None

    async def initialize(self) -> IndexState:
        """Prepare storage and connect to the vector index.

        An unreachable or unprovisionable index degrades to JSON-only mode;
        this never raises.
        """
        if self._initialized:
            return self.index_state
        async with self._init_lock:
            if not self._initialized:
                await self._connect()
                self._initialized = True
        return self.index_state

    async def _connect(self) -> None:
        await aiofiles.os.makedirs(self._log.root, exist_ok=True)

        if self._client is not None:
            ready = await self._client.wait_until_ready(
                timeout=self.settings.heartbeat_timeout,
                interval=self.settings.heartbeat_interval,
            )
            if not ready:
                self._degrade(f"no heartbeat from {self._client.base_url}")
            else:
                try:
                    await self._client.provision()
                except VectorIndexError as exc:
                    self._degrade(f"provisioning failed: {exc}")
                else:
                    self.index_state = IndexState.READY
                    logger.info(
                        "Vector index ready (%s/%s/%s)",
                        self._client.tenant, self._client.database, self._client.collection_name,
                    )
        elif self.index_state is IndexState.DISABLED:
            logger.info("Vector index disabled; running JSON-only")

        self.searcher.index = self.index

    def _degrade(self, reason: str) -> None:
        logger.warning("Vector index unavailable, using JSON-only mode: %s", reason)
        self.index_state = IndexState.DEGRADED
        self.searcher.index = None

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    async def store(self, record: MemoryRecord, identity: Identity | None = None) -> StoreResult:
        """Persist *record* to the durable log and the vector index."""
        await self.initialize()
        settings = self.settings
        user_id, team_id = resolve_owner(
            record, identity or current_identity(), settings.user_id, settings.team_id
        )
        record = record.evolve(
            user_id=user_id,
            team_id=team_id,
            project_id=record.project_id or settings.project_id,
            record_id=record.record_id or generate_id(),
        )

        logged = log_failed = False
        if not settings.disable_json:
            logged = await self._log.append(record)
            log_failed = not logged

        indexed = index_failed = False
        if record.is_private and settings.private_json_only:
            pass
        elif self.index is not None:
            try:
                await self.index.add(record.key, record.document, record.to_metadata())
                indexed = True
            except VectorIndexError as exc:
                logger.warning("Vector index write failed for %s: %s", record.key, exc)
                index_failed = True
        elif self.index_state is IndexState.DEGRADED:
            index_failed = True

        if not (logged or indexed):
            status = StoreStatus.FAILED
            logger.error("Memory for session %s was not saved", record.session_id)
        elif log_failed or index_failed:
            status = StoreStatus.DEGRADED
        else:
            status = StoreStatus.SUCCESS
        return StoreResult(record=record, status=status, logged=logged, indexed=indexed)

    async def store_exchange(
        self,
        session_id: str,
        user_message: str,
        assistant_response: str,
        context: Iterable[str] = (),
        tags: Iterable[str] = (),
        auto_extract: bool = True,
        visibility: Visibility | str = Visibility.TEAM,
        source: KnowledgeSource | str = KnowledgeSource.USER_PROVIDED,
        project_id: str | None = None,
        domain: str | None = None,
        identity: Identity | None = None,
    ) -> StoreResult:
        """Build a record for one exchange, stamped now, and store it.

        With *auto_extract* the messages are scanned for known tags and
        file/URL references, merged after the caller-supplied values.
        """
        context, tags = list(context), list(tags)
        if auto_extract:
            combined = f"{user_message} {assistant_response}"
            tags = merge_unique(tags, extract_tags(combined))
            context = merge_unique(context, extract_context(combined))
        record = MemoryRecord(
            session_id=session_id,
            timestamp=int(time.time() * 1000),
            user_message=user_message,
            assistant_response=assistant_response,
            context=tuple(context),
            tags=tuple(tags),
            source=source,
            visibility=visibility,
            project_id=project_id,
            domain=domain,
        )
        return await self.store(record, identity=identity)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        session_id: str | None = None,
        limit: int = 5,
        identity: Identity | None = None,
    ) -> SearchResponse:
        await self.initialize()
        return await self.searcher.search(query, session_id=session_id, limit=limit, identity=identity)

    async def build_context_prompt(
        self,
        current_message: str,
        session_id: str | None = None,
        max_length: int = prompt.DEFAULT_MAX_LENGTH,
        identity: Identity | None = None,
    ) -> str:
        await self.initialize()
        return await prompt.build_context_prompt(
            self.searcher, current_message, session_id, max_length, identity
        )

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _user(self, identity: Identity | None) -> str:
        return active_user(identity or current_identity(), self.settings.user_id)

    async def list_sessions(self, identity: Identity | None = None) -> list[str]:
        return await self._log.list_sessions(self._user(identity))

    async def delete_session(self, session_id: str, identity: Identity | None = None) -> SessionDeletion:
        """Remove a session file and its vector entries for the active user."""
        await self.initialize()
        user_id = self._user(identity)
        removed = await self._log.delete_session(user_id, session_id)
        result = SessionDeletion(session_id=session_id, removed=removed)

        if self.index is not None:
            where = {"$and": [{"sessionId": session_id}, {"userId": user_id}]}
            try:
                if await self.index.ids(where):
                    await self.index.delete(where)
                    # Without JSON persistence the index holds the only copy.
                    result.removed = True
                result.index_purged = True
            except VectorIndexError as exc:
                logger.warning("Could not purge session %s from the vector index: %s", session_id, exc)
                result.index_purged = False
        return result

    async def session_summary(
        self, session_id: str, identity: Identity | None = None
    ) -> dict[str, Any] | None:
        """Summarise one session from the durable log, or ``None`` if absent."""
        records = await self._log.scan(self._user(identity), session_id)
        if not records:
            return None
        timestamps = [r.timestamp for r in records]
        return {
            "sessionId": session_id,
            "conversationCount": len(records),
            "tags": merge_unique(*(r.tags for r in records)),
            "context": merge_unique(*(r.context for r in records)),
            "timeRange": {"earliest": min(timestamps), "latest": max(timestamps)},
            "recentMemories": [
                {
                    "timestamp": r.timestamp,
                    "userMessage": r.user_message,
                    "assistantResponse": r.assistant_response,
                }
                for r in records[-RECENT_MEMORIES:]
            ],
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reload_from_log(self) -> ReloadReport:
        """Replay every durable record into the vector index."""
        await self.initialize()
        return await reload_all_from_log(self._log, self.index, self.settings.private_json_only)

    async def status(self, identity: Identity | None = None) -> dict[str, Any]:
        await self.initialize()
        settings = self.settings
        return {
            "vectorIndex": self.index_state.value,
            "vectorSearch": self.index is not None,
            "sessions": len(await self.list_sessions(identity)),
            "memoryDir": str(self._log.root),
            "chromaUrl": settings.chroma_base_url if settings.chroma_enabled else None,
            "tenant": settings.chroma_tenant,
            "database": settings.chroma_database,
            "collection": settings.chroma_collection,
            "jsonPersistence": not settings.disable_json,
            "privateJsonOnly": settings.private_json_only,
        }
