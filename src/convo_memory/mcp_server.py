"""
MCP (Model Context Protocol) server for convo-memory.

Exposes the MemoryManager as a set of tools so that an LLM client can
persist and recall conversation exchanges across sessions.

Run as a stdio server:
    python -m convo_memory.mcp_server

Or via the installed entry-point:
    convo-memory-mcp

Configuration is read from the environment; see ``convo_memory.config``.
Set ``MCP_TRANSPORT=http`` to serve streamable HTTP on ``MCP_HOST:MCP_PORT``.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from .config import load_settings
from .context import identity_scope
from .log_store import check_session_id
from .logging_config import setup_logging
from .memory import MemoryManager, StoreStatus

# Singleton created by the server lifespan, or lazily when tools are called directly.
_manager: MemoryManager | None = None


async def _get_manager() -> MemoryManager:
    global _manager
    if _manager is None:
        _manager = MemoryManager(settings=load_settings())
    await _manager.initialize()
    return _manager


def _require(value: str | None, name: str) -> str:
    if value is None or not value.strip():
        raise ToolError(f"{name} is required")
    return value


def _check_session(session_id: str | None) -> str | None:
    if not session_id:
        return None
    try:
        return check_session_id(session_id)
    except ValueError as exc:
        raise ToolError(str(exc)) from exc


@asynccontextmanager
async def _lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Connect to the vector index before the first request is served."""
    manager = await _get_manager()
    try:
        yield
    finally:
        await manager.aclose()


# ---------------------------------------------------------------------------
# FastMCP server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "convo-memory",
    lifespan=_lifespan,
    instructions=(
        "Conversation memory backed by durable JSON logs and an optional "
        "Chroma vector index. "
        "Use `store_conversation_memory` after important exchanges. "
        "Use `search_conversation_memory` or `build_context_prompt` to recall "
        "relevant past context. "
        "Use `list_memory_sessions`, `get_session_context` and "
        "`delete_memory_session` to manage sessions, and `memory_status` to "
        "check whether vector search is available."
    ),
)


@mcp.tool()
async def store_conversation_memory(
    session_id: str,
    user_message: str,
    assistant_response: str,
    context: list[str] | None = None,
    tags: list[str] | None = None,
    auto_extract: bool = True,
    visibility: str = "team",
    source: str = "user_provided",
    project_id: str | None = None,
    domain: str | None = None,
    user_id: str | None = None,
    team_id: str | None = None,
) -> str:
    """
    Store a conversation exchange for future retrieval.

    Args:
        session_id:         Identifier grouping an ongoing conversation.
        user_message:       The user's message, stored verbatim.
        assistant_response: The assistant's response, stored verbatim.
        context:            Extra annotations such as "file: app.py".
        tags:               Category labels.
        auto_extract:       Also extract known tags and file/URL references
                            from the messages (default true).
        visibility:         private | team | public (default team).  Private
                            memories stay in the owner's local log.
        source:             user_provided | engineer_added | system_generated
                            | external_api | document_parsed.
        project_id:         Optional project identifier.
        domain:             Optional knowledge domain.
        user_id, team_id:   Act on behalf of this user/team for this call.

    Returns:
        A confirmation message.
    """
    _require(session_id, "session_id")
    _check_session(session_id)
    _require(user_message, "user_message")
    _require(assistant_response, "assistant_response")
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        try:
            result = await manager.store_exchange(
                session_id,
                user_message,
                assistant_response,
                context=context or [],
                tags=tags or [],
                auto_extract=auto_extract,
                visibility=visibility,
                source=source,
                project_id=project_id,
                domain=domain,
            )
        except ValueError as exc:
            raise ToolError(f"Invalid memory: {exc}") from exc

    if result.status is StoreStatus.FAILED:
        return "✗ Failed to store conversation memory"
    record = result.record
    message = (
        f"✓ Memory stored for session '{session_id}' with {len(record.tags)} tags "
        f"and {len(record.context)} context items"
    )
    if result.status is StoreStatus.DEGRADED:
        message += " (degraded: not every backend accepted the write)"
    return message


@mcp.tool()
async def search_conversation_memory(
    query: str,
    session_id: str | None = None,
    limit: int = 5,
    user_id: str | None = None,
    team_id: str | None = None,
) -> str:
    """
    Search previous conversations for relevant context.

    Uses vector similarity when the index is available and falls back to
    keyword matching over your own stored conversations otherwise.

    Args:
        query:      Search text.
        session_id: Limit the search to one session.
        limit:      Maximum number of results (default 5).

    Returns:
        The matching exchanges with a relevance score each.
    """
    _require(query, "query")
    session_id = _check_session(session_id)
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        response = await manager.search(query, session_id=session_id, limit=limit)

    if not response.results:
        return "No relevant memories found for your query."

    formatted = "\n\n".join(
        f"**Result {i}** (relevance: {r.relevance:.2f})\n{r.content}\n---"
        for i, r in enumerate(response.results, 1)
    )
    return f"Found {len(response.results)} relevant memories:\n\n{formatted}"


@mcp.tool()
async def get_session_context(
    session_id: str,
    user_id: str | None = None,
    team_id: str | None = None,
) -> str:
    """
    Summarise a conversation session: size, tags, context and recent exchanges.

    Returns:
        JSON summary of the session.
    """
    _require(session_id, "session_id")
    _check_session(session_id)
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        summary = await manager.session_summary(session_id)
    if summary is None:
        return f"No memories found for session '{session_id}'."
    return json.dumps(summary, indent=2)


@mcp.tool()
async def build_context_prompt(
    current_message: str,
    session_id: str | None = None,
    max_context_length: int = 2000,
    user_id: str | None = None,
    team_id: str | None = None,
) -> str:
    """
    Build a prompt fragment with relevant memories for the current message.

    Args:
        current_message:    The message being answered.
        session_id:         Limit context to one session.
        max_context_length: Upper bound on the fragment length (default 2000).

    Returns:
        The context block, or an empty string if nothing relevant was found.
    """
    _require(current_message, "current_message")
    session_id = _check_session(session_id)
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        return await manager.build_context_prompt(
            current_message, session_id=session_id, max_length=max_context_length
        )


@mcp.tool()
async def list_memory_sessions(user_id: str | None = None, team_id: str | None = None) -> str:
    """
    List your conversation sessions.

    Returns:
        One session identifier per line.
    """
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        sessions = await manager.list_sessions()
    if not sessions:
        return "No conversation sessions found."
    return "Available sessions:\n" + "\n".join(f"• {s}" for s in sessions)


@mcp.tool()
async def delete_memory_session(
    session_id: str,
    user_id: str | None = None,
    team_id: str | None = None,
) -> str:
    """
    Delete all memories of one of your sessions, locally and in the index.

    Returns:
        A confirmation message.
    """
    _require(session_id, "session_id")
    _check_session(session_id)
    manager = await _get_manager()
    with identity_scope(user_id, team_id):
        result = await manager.delete_session(session_id)
    if not result.removed:
        return f"Session '{session_id}' not found."
    message = f"✓ Session '{session_id}' deleted successfully"
    if result.index_purged is False:
        message += " (vector index entries could not be removed)"
    return message


@mcp.tool()
async def reload_memories_from_json() -> str:
    """
    Re-index every stored conversation into the vector index.

    Returns:
        Counts of loaded records and failed files.
    """
    manager = await _get_manager()
    if manager.index is None:
        return "Vector index not available; nothing to reload."
    report = await manager.reload_from_log()
    return (
        "🔄 Bulk reload completed!\n\n"
        f"• Memories loaded: {report.loaded}\n"
        f"• Errors: {report.errors}\n"
        f"• Private memories skipped: {report.skipped}"
    )


@mcp.tool()
async def memory_status() -> str:
    """
    Report memory system status and configuration.

    Returns:
        A short status report.
    """
    manager = await _get_manager()
    status = await manager.status()
    available = status["vectorSearch"]
    lines = [
        "Memory System Status:",
        f"• Vector index: {'✓ Connected' if available else '✗ Not available (using JSON fallback)'}"
        f" [{status['vectorIndex']}]",
        f"• Active Sessions: {status['sessions']}",
        f"• Memory Directory: {status['memoryDir']}",
        f"• Vector Search: {'Enabled' if available else 'Disabled (keyword search only)'}",
        f"• JSON persistence: {'on' if status['jsonPersistence'] else 'off'}",
    ]
    if not available and status["chromaUrl"]:
        lines.append(f"\nNote: no Chroma server reachable at {status['chromaUrl']}.")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Entry-point
# ---------------------------------------------------------------------------


def main() -> None:
    """Run the MCP server (stdio by default)."""
    settings = load_settings()
    setup_logging(settings.log_level)
    if settings.transport.lower() in ("http", "streamable-http"):
        mcp.settings.host = settings.host
        mcp.settings.port = settings.port
        mcp.run(transport="streamable-http")
    else:
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
