"""
Configuration loaded from environment variables (and a ``.env`` file, if any).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv

DEFAULT_MEMORY_DIR = str(Path.home() / ".cache" / "convo-memory")


def _flag(value: str | None, default: bool = False) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _optional(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None


@dataclass
class Settings:
    """Runtime settings for the memory subsystem and the MCP server."""

    memory_dir: str = DEFAULT_MEMORY_DIR

    # Vector index (remote Chroma server)
    chroma_enabled: bool = True
    chroma_url: str | None = None
    chroma_host: str = "127.0.0.1"
    chroma_port: int = 8000
    chroma_tenant: str = "default_tenant"
    chroma_database: str = "default_database"
    chroma_collection: str = "llm_conversation_memory"
    heartbeat_timeout: float = 60.0
    heartbeat_interval: float = 1.0
    request_timeout: float = 5.0
    request_retries: int = 1
    embedding_model: str = "all-MiniLM-L6-v2"

    # Identity defaults
    user_id: str | None = None
    team_id: str | None = None
    project_id: str | None = None

    # Persistence policy
    disable_json: bool = False
    private_json_only: bool = True

    # Server
    transport: str = "stdio"
    host: str = "127.0.0.1"
    port: int = 8080
    log_level: str = "INFO"

    @property
    def chroma_base_url(self) -> str:
        if self.chroma_url:
            return self.chroma_url.rstrip("/")
        return f"http://{self.chroma_host}:{self.chroma_port}"


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build :class:`Settings` from *environ* (default: ``os.environ``).

    A ``.env`` file is only consulted when reading the real environment.
    """
    if environ is None:
        load_dotenv()
        environ = os.environ
    env = environ.get

    return Settings(
        memory_dir=os.path.expanduser(env("MCP_MEMORY_DIR") or DEFAULT_MEMORY_DIR),
        chroma_enabled=_flag(env("CHROMA_ENABLED"), default=True),
        chroma_url=_optional(env("CHROMA_URL")),
        chroma_host=_optional(env("CHROMA_HOST")) or "127.0.0.1",
        chroma_port=int(env("CHROMA_PORT") or 8000),
        chroma_tenant=_optional(env("CHROMA_TENANT")) or "default_tenant",
        chroma_database=_optional(env("CHROMA_DATABASE")) or "default_database",
        chroma_collection=_optional(env("CHROMA_COLLECTION")) or "llm_conversation_memory",
        heartbeat_timeout=float(env("CHROMA_HEARTBEAT_TIMEOUT") or 60),
        request_timeout=float(env("CHROMA_REQUEST_TIMEOUT") or 5),
        embedding_model=_optional(env("MCP_EMBEDDING_MODEL")) or "all-MiniLM-L6-v2",
        user_id=_optional(env("MCP_USER_ID")),
        team_id=_optional(env("MCP_TEAM_ID")),
        project_id=_optional(env("MCP_PROJECT_ID")),
        disable_json=_flag(env("MCP_DISABLE_JSON")),
        private_json_only=_flag(env("MCP_PRIVATE_JSON_ONLY"), default=True),
        transport=_optional(env("MCP_TRANSPORT")) or "stdio",
        host=_optional(env("MCP_HOST")) or "127.0.0.1",
        port=int(env("MCP_PORT") or 8080),
        log_level=_optional(env("LOG_LEVEL")) or "INFO",
    )
