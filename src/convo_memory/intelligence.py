"""
Lightweight annotation helpers applied when a conversation is stored.

  - Tag extraction from a fixed technical vocabulary
  - Context extraction of file references and URLs
  - Record ID generation
"""

from __future__ import annotations

import re
import uuid
from typing import Iterable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Keywords recognised as tags when they appear anywhere in the text.
COMMON_TAGS: tuple[str, ...] = (
    "javascript", "typescript", "python", "react", "node", "docker",
    "kubernetes", "aws", "database", "api", "frontend", "backend",
    "deployment", "security", "performance", "testing", "debugging",
    "configuration", "integration", "authentication", "monitoring",
)

_FILE_REF = re.compile(r"(?:file:|filename:|path:)\s*([^\s,]+)", re.IGNORECASE)
_URL = re.compile(r"https?://[^\s,]+", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def extract_tags(text: str) -> list[str]:
    """Return every :data:`COMMON_TAGS` keyword contained in *text*.

    Matching is plain substring matching, so ``"nodejs"`` yields ``node``.
    """
    lowered = text.lower()
    return [tag for tag in COMMON_TAGS if tag in lowered]


def extract_context(text: str) -> list[str]:
    """Pull ``file: …`` and ``url: …`` annotations out of *text*.

    File references are introduced by ``file:``, ``filename:`` or ``path:``.
    Duplicates are dropped; first occurrence wins.
    """
    found = [f"file: {m.group(1)}" for m in _FILE_REF.finditer(text)]
    found += [f"url: {m.group(0)}" for m in _URL.finditer(text)]
    return merge_unique(found)


def merge_unique(*groups: Iterable[str]) -> list[str]:
    """Concatenate *groups*, keeping the first occurrence of each item."""
    return list(dict.fromkeys(item for group in groups for item in group))


# ---------------------------------------------------------------------------
# ID generation
# ---------------------------------------------------------------------------


def generate_id() -> str:
    """Return a new unique memory ID."""
    return str(uuid.uuid4())
