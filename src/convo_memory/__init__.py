"""
convo-memory: durable conversation memory for LLM tool servers.

Persists conversation exchanges to per-user JSON logs, optionally indexes
them in a remote Chroma server, and answers similarity queries with a
keyword fallback whenever vector search is unavailable.
"""

from .context import clear_identity, current_identity, identity_scope, set_identity
from .memory import MemoryManager, StoreResult, StoreStatus
from .records import Identity, MemoryRecord, SearchResult, Visibility
from .store import ChromaIndex

__all__ = [
    "ChromaIndex",
    "Identity",
    "MemoryManager",
    "MemoryRecord",
    "SearchResult",
    "StoreResult",
    "StoreStatus",
    "Visibility",
    "clear_identity",
    "current_identity",
    "identity_scope",
    "set_identity",
]
