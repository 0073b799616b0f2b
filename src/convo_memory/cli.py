"""
Command-line interface for convo-memory.

Sub-commands
------------
store    – Store a conversation exchange.
search   – Search stored conversations.
context  – Print a context prompt for a message.
sessions – List the active user's sessions.
summary  – Summarise one session.
delete   – Delete a session.
reload   – Re-index every stored record into the vector index.
status   – Show backend status.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

from .config import load_settings
from .context import identity_scope
from .log_store import check_session_id
from .logging_config import setup_logging
from .memory import MemoryManager, StoreStatus


def _session_id(value: str) -> str:
    try:
        return check_session_id(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="convo-memory",
        description="Durable conversation memory with optional vector search.",
    )
    parser.add_argument(
        "--memory-dir",
        default=None,
        metavar="PATH",
        help="Directory holding the JSON session logs (default: $MCP_MEMORY_DIR).",
    )
    parser.add_argument(
        "--no-vector",
        action="store_true",
        help="Do not contact the Chroma server; keyword search only.",
    )
    parser.add_argument("--user", default=None, help="Act as this user.")
    parser.add_argument("--team", default=None, help="Act as this team.")

    sub = parser.add_subparsers(dest="command", required=True)

    # store
    p_store = sub.add_parser("store", help="Store a conversation exchange.")
    p_store.add_argument("session", type=_session_id, help="Session identifier.")
    p_store.add_argument("user_message", help="The user's message.")
    p_store.add_argument(
        "assistant_response",
        nargs="?",
        help="The assistant's response (reads stdin if omitted).",
    )
    p_store.add_argument("--tag", action="append", default=[], dest="tags", help="Add a tag (repeatable).")
    p_store.add_argument(
        "--context", action="append", default=[], dest="context", help="Add a context item (repeatable)."
    )
    p_store.add_argument(
        "--visibility",
        choices=["private", "team", "public"],
        default="team",
        help="Record visibility (default: team).",
    )
    p_store.add_argument(
        "--no-extract",
        action="store_true",
        help="Disable automatic tag and context extraction.",
    )

    # search
    p_search = sub.add_parser("search", help="Search stored conversations.")
    p_search.add_argument("query", help="Search text.")
    p_search.add_argument("--session", type=_session_id, default=None, help="Limit to one session.")
    p_search.add_argument(
        "-n",
        type=int,
        default=5,
        metavar="N",
        help="Number of results to return (default: 5).",
    )
    p_search.add_argument("--json", action="store_true", dest="as_json", help="Output results as JSON.")

    # context
    p_context = sub.add_parser("context", help="Build a context prompt for a message.")
    p_context.add_argument("message", help="The current message.")
    p_context.add_argument("--session", type=_session_id, default=None, help="Limit to one session.")
    p_context.add_argument(
        "--max-length",
        type=int,
        default=2000,
        metavar="N",
        help="Maximum prompt length in characters (default: 2000).",
    )

    # sessions
    sub.add_parser("sessions", help="List sessions.")

    # summary
    p_summary = sub.add_parser("summary", help="Summarise a session.")
    p_summary.add_argument("session", type=_session_id, help="Session identifier.")

    # delete
    p_delete = sub.add_parser("delete", help="Delete a session.")
    p_delete.add_argument("session", type=_session_id, help="Session identifier.")

    # reload
    sub.add_parser("reload", help="Re-index the JSON logs into the vector index.")

    # status
    sub.add_parser("status", help="Show backend status.")

    return parser


async def _run(args: argparse.Namespace, manager: MemoryManager) -> int:
    if args.command == "store":
        response = args.assistant_response
        if response is None:
            response = sys.stdin.read()
        if not args.user_message.strip() or not response.strip():
            print("Error: both messages are required.", file=sys.stderr)
            return 1
        result = await manager.store_exchange(
            args.session,
            args.user_message,
            response,
            context=args.context,
            tags=args.tags,
            auto_extract=not args.no_extract,
            visibility=args.visibility,
        )
        if result.status is StoreStatus.FAILED:
            print("Error: memory was not saved.", file=sys.stderr)
            return 1
        print(f"Stored {result.record.key} in session {args.session} ({result.status.value}).")

    elif args.command == "search":
        response = await manager.search(args.query, session_id=args.session, limit=args.n)
        if not response.results:
            print("No memories found.")
            return 0
        if args.as_json:
            print(json.dumps([r.to_dict() for r in response.results], indent=2))
        else:
            for i, r in enumerate(response.results, 1):
                print(f"[{i}] (distance={r.distance:.3f}, via {response.path})")
                print(f"    {r.content[:200]}")
                print()

    elif args.command == "context":
        print(await manager.build_context_prompt(args.message, args.session, args.max_length))

    elif args.command == "sessions":
        sessions = await manager.list_sessions()
        if not sessions:
            print("No sessions found.")
        for session in sessions:
            print(session)

    elif args.command == "summary":
        summary = await manager.session_summary(args.session)
        if summary is None:
            print(f"Session {args.session} not found.", file=sys.stderr)
            return 1
        print(json.dumps(summary, indent=2))

    elif args.command == "delete":
        result = await manager.delete_session(args.session)
        if not result.removed:
            print(f"Session {args.session} not found.")
            return 0
        print(f"Deleted session {args.session}.")

    elif args.command == "reload":
        report = await manager.reload_from_log()
        print(json.dumps(report.to_dict()))

    elif args.command == "status":
        print(json.dumps(await manager.status(), indent=2))

    return 0


async def _main(args: argparse.Namespace) -> int:
    settings = load_settings()
    if args.memory_dir:
        settings.memory_dir = args.memory_dir
    if args.no_vector:
        settings.chroma_enabled = False
    manager = MemoryManager(settings=settings)
    try:
        with identity_scope(args.user, args.team):
            return await _run(args, manager)
    finally:
        await manager.aclose()


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging("WARNING")
    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
