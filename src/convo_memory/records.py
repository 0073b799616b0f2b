"""
Record model for conversational memory.

A :class:`MemoryRecord` is one user/assistant exchange.  Records are
immutable once written; the durable log stores them as camelCase JSON
objects and the vector index stores a flattened, primitives-only copy
of the same fields as metadata.
"""

from __future__ import annotations

import enum
from dataclasses import asdict, dataclass, field, replace
from typing import Any

#: Fallback owner identifiers used when nothing else supplies one.
UNKNOWN_USER = "unknown-user"
DEFAULT_TEAM = "default-team"

#: Separator used when flattening list fields into vector metadata.
LIST_SEPARATOR = ", "


class Visibility(str, enum.Enum):
    PRIVATE = "private"
    TEAM = "team"
    PUBLIC = "public"


class KnowledgeSource(str, enum.Enum):
    USER_PROVIDED = "user_provided"
    ENGINEER_ADDED = "engineer_added"
    SYSTEM_GENERATED = "system_generated"
    EXTERNAL_API = "external_api"
    DOCUMENT_PARSED = "document_parsed"


#: Visibilities that the vector index may return to any caller.
SHARED_VISIBILITIES = (Visibility.TEAM.value, Visibility.PUBLIC.value)

_JSON_FIELDS = {
    "session_id": "sessionId",
    "timestamp": "timestamp",
    "user_message": "userMessage",
    "assistant_response": "assistantResponse",
    "context": "context",
    "tags": "tags",
    "source": "source",
    "user_id": "userId",
    "team_id": "teamId",
    "visibility": "visibility",
    "project_id": "projectId",
    "domain": "domain",
    "record_id": "recordId",
}


@dataclass(frozen=True)
class Identity:
    """The user/team a request acts on behalf of."""

    user_id: str | None = None
    team_id: str | None = None


@dataclass(frozen=True)
class MemoryRecord:
    session_id: str
    timestamp: int
    user_message: str
    assistant_response: str
    context: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    source: KnowledgeSource = KnowledgeSource.USER_PROVIDED
    user_id: str | None = None
    team_id: str | None = None
    visibility: Visibility = Visibility.TEAM
    project_id: str | None = None
    domain: str | None = None
    record_id: str | None = None

    def __post_init__(self) -> None:
        # Coerce plain strings and lists so callers can pass JSON-ish values.
        object.__setattr__(self, "visibility", Visibility(self.visibility))
        object.__setattr__(self, "source", KnowledgeSource(self.source))
        object.__setattr__(self, "context", tuple(self.context))
        object.__setattr__(self, "tags", tuple(dict.fromkeys(self.tags)))

    @property
    def key(self) -> str:
        """Storage key in the vector index."""
        return self.record_id or f"{self.session_id}_{self.timestamp}"

    @property
    def document(self) -> str:
        return f"User: {self.user_message}\nAssistant: {self.assistant_response}"

    @property
    def is_private(self) -> bool:
        return self.visibility is Visibility.PRIVATE

    def evolve(self, **changes: Any) -> MemoryRecord:
        return replace(self, **changes)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Return the camelCase JSON form written to the durable log."""
        data: dict[str, Any] = {}
        for attr, value in asdict(self).items():
            if value is None:
                continue
            if isinstance(value, enum.Enum):
                value = value.value
            elif isinstance(value, tuple):
                value = list(value)
            data[_JSON_FIELDS[attr]] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MemoryRecord:
        """Build a record from its camelCase JSON form.

        Unknown keys are ignored.  Missing list fields default to empty
        and a missing ``visibility`` or ``source`` takes the default.
        """
        kwargs: dict[str, Any] = {}
        for attr, key in _JSON_FIELDS.items():
            if key in data and data[key] is not None:
                kwargs[attr] = data[key]
        kwargs.setdefault("context", ())
        kwargs.setdefault("tags", ())
        kwargs["timestamp"] = int(kwargs.get("timestamp", 0))
        return cls(**kwargs)

    def to_metadata(self) -> dict[str, str | int]:
        """Flatten the record into scalar-only vector metadata.

        Lists are joined with :data:`LIST_SEPARATOR` and ``None`` values are
        dropped, since the index only filters on scalar values.
        """
        meta: dict[str, str | int] = {}
        for key, value in self.to_dict().items():
            if isinstance(value, list):
                value = LIST_SEPARATOR.join(value)
            meta[key] = value
        return meta


def resolve_owner(
    record: MemoryRecord,
    scope: Identity | None,
    default_user: str | None,
    default_team: str | None,
) -> tuple[str, str]:
    """Resolve ``(user_id, team_id)`` for a record being written.

    Each identifier resolves independently: request scope first, then the
    environment default, then the value on the record, then the sentinel.
    """
    scope = scope or Identity()
    user_id = scope.user_id or default_user or record.user_id or UNKNOWN_USER
    team_id = scope.team_id or default_team or record.team_id or DEFAULT_TEAM
    return user_id, team_id


def active_user(scope: Identity | None, default_user: str | None) -> str:
    """The user whose durable logs a read operation touches."""
    return (scope and scope.user_id) or default_user or UNKNOWN_USER


def active_team(scope: Identity | None, default_team: str | None) -> str | None:
    """The team used to filter shared search results, if any."""
    return (scope and scope.team_id) or default_team or None


@dataclass
class SearchResult:
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)
    distance: float = 0.0

    @property
    def relevance(self) -> float:
        return 1.0 - self.distance

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "metadata": self.metadata, "distance": self.distance}
