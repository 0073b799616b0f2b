"""
Length-bounded prompt fragments built from past conversations.
"""

from __future__ import annotations

import logging

from .records import Identity, SearchResult
from .search import SearchOrchestrator

logger = logging.getLogger(__name__)

CONTEXT_HEADER = "## Relevant Context from Previous Conversations:\n\n"
DEFAULT_MAX_LENGTH = 2000
PROMPT_RESULT_LIMIT = 3


def format_block(result: SearchResult) -> str:
    session = result.metadata.get("sessionId") or "Session"
    return f"### {session}\n{result.content}\n\n"


def assemble(results: list[SearchResult], max_length: int = DEFAULT_MAX_LENGTH) -> str:
    """Join result blocks under a header, stopping before *max_length* is exceeded.

    Returns an empty string if not even the first block fits.
    """
    text = CONTEXT_HEADER
    blocks = 0
    for result in results:
        block = format_block(result)
        if len(text) + len(block) > max_length:
            break
        text += block
        blocks += 1
    return text if blocks else ""


async def build_context_prompt(
    searcher: SearchOrchestrator,
    current_message: str,
    session_id: str | None = None,
    max_length: int = DEFAULT_MAX_LENGTH,
    identity: Identity | None = None,
) -> str:
    try:
        response = await searcher.search(
            current_message, session_id=session_id, limit=PROMPT_RESULT_LIMIT, identity=identity
        )
        return assemble(response.results, max_length)
    except Exception:  # noqa: BLE001
        logger.exception("Failed to build context prompt")
        return ""
