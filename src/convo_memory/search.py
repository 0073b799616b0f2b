"""
Search orchestration: vector similarity first, keyword scan as fallback.

The vector path only ever sees shared (team/public) records.  Private
records live in the owner's durable log and are reachable through the
keyword fallback, which reads nothing but the active user's own files.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .context import current_identity
from .log_store import LogStore
from .records import (
    SHARED_VISIBILITIES,
    Identity,
    MemoryRecord,
    SearchResult,
    active_team,
    active_user,
)
from .store import ChromaIndex, VectorIndexError

logger = logging.getLogger(__name__)

#: Distance given to every keyword hit; keyword matches carry no similarity score.
UNRANKED_DISTANCE = 0.5

VECTOR_PATH = "vector"
FALLBACK_PATH = "fallback"


@dataclass
class SearchResponse:
    results: list[SearchResult] = field(default_factory=list)
    path: str = FALLBACK_PATH
    #: True when the vector index was tried and failed.
    degraded: bool = False

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    def __bool__(self) -> bool:
        return bool(self.results)


def build_where(session_id: str | None, team_id: str | None) -> dict[str, Any]:
    """Chroma ``where`` filter limiting results to shared records."""
    clauses: list[dict[str, Any]] = []
    if session_id:
        clauses.append({"sessionId": session_id})
    if team_id:
        clauses.append({"teamId": team_id})
    clauses.append({"visibility": {"$in": list(SHARED_VISIBILITIES)}})
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def searchable_text(record: MemoryRecord) -> str:
    return f"{record.user_message} {record.assistant_response} {' '.join(record.tags)}".lower()


def keyword_matches(records: list[MemoryRecord], query: str, limit: int) -> list[SearchResult]:
    """Case-insensitive substring matches in scan order, truncated to *limit*."""
    needle = query.lower()
    results = []
    for record in records:
        if needle in searchable_text(record):
            results.append(
                SearchResult(
                    content=record.document,
                    metadata={
                        "sessionId": record.session_id,
                        "timestamp": record.timestamp,
                        "tags": list(record.tags),
                        "context": list(record.context),
                        "visibility": record.visibility.value,
                        "recordId": record.key,
                    },
                    distance=UNRANKED_DISTANCE,
                )
            )
    return results[: max(limit, 0)]


class SearchOrchestrator:
    """Answers similarity queries; never raises to the caller."""

    def __init__(
        self,
        log_store: LogStore,
        index: ChromaIndex | None = None,
        default_user: str | None = None,
        default_team: str | None = None,
    ) -> None:
        self.log_store = log_store
        self.index = index
        self.default_user = default_user
        self.default_team = default_team

    async def search(
        self,
        query: str,
        session_id: str | None = None,
        limit: int = 5,
        identity: Identity | None = None,
    ) -> SearchResponse:
        identity = identity or current_identity()
        degraded = False

        if self.index is not None:
            where = build_where(session_id, active_team(identity, self.default_team))
            try:
                results = await self.index.query(query, where=where, n_results=limit)
            except VectorIndexError as exc:
                logger.warning("Vector search failed, falling back to keyword scan: %s", exc)
                degraded = True
            else:
                if results:
                    return SearchResponse(results=results, path=VECTOR_PATH)
                logger.info("Vector search returned no results, falling back to keyword scan")

        results = await self.keyword_search(query, session_id, limit, identity)
        return SearchResponse(results=results, path=FALLBACK_PATH, degraded=degraded)

    async def keyword_search(
        self,
        query: str,
        session_id: str | None = None,
        limit: int = 5,
        identity: Identity | None = None,
    ) -> list[SearchResult]:
        user_id = active_user(identity, self.default_user)
        try:
            records = await self.log_store.scan(user_id, session_id)
        except OSError as exc:
            logger.error("Keyword search could not read logs for %s: %s", user_id, exc)
            return []
        return keyword_matches(records, query, limit)
