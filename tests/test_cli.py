"""Tests for the CLI entry point."""

from __future__ import annotations

import io
import json

import pytest

from convo_memory.cli import main


@pytest.fixture()
def run(tmp_path, monkeypatch):
    """Invoke the CLI against a temporary memory directory, JSON-only."""
    for var in ("MCP_USER_ID", "MCP_TEAM_ID", "MCP_PROJECT_ID", "MCP_DISABLE_JSON"):
        monkeypatch.delenv(var, raising=False)
    memory_dir = str(tmp_path / "memory")

    def _run(*argv: str) -> int:
        return main(["--memory-dir", memory_dir, "--no-vector", *argv])

    return _run


class TestCLI:
    def test_sessions_empty(self, run, capsys):
        assert run("sessions") == 0
        assert capsys.readouterr().out.strip() == "No sessions found."

    def test_store_and_list_sessions(self, run, capsys):
        assert run("store", "s1", "how to prune docker", "docker system prune") == 0
        out = capsys.readouterr().out
        assert "in session s1 (success)" in out

        run("sessions")
        assert capsys.readouterr().out.strip() == "s1"

    def test_store_reads_response_from_stdin(self, run, capsys, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO("answer from stdin"))
        assert run("store", "s1", "question") == 0
        capsys.readouterr()

        run("summary", "s1")
        summary = json.loads(capsys.readouterr().out)
        assert summary["recentMemories"][0]["assistantResponse"] == "answer from stdin"

    def test_store_missing_response_returns_error(self, run, monkeypatch):
        monkeypatch.setattr("sys.stdin", io.StringIO(""))
        assert run("store", "s1", "question") == 1

    def test_search_empty(self, run, capsys):
        assert run("search", "anything") == 0
        assert "No memories found" in capsys.readouterr().out

    def test_store_and_search(self, run, capsys):
        run("store", "s1", "kubernetes pod crashloop", "check the liveness probe")
        capsys.readouterr()

        assert run("search", "crashloop") == 0
        out = capsys.readouterr().out
        assert "via fallback" in out
        assert "kubernetes pod crashloop" in out

    def test_search_json(self, run, capsys):
        run("store", "s1", "kubernetes pod crashloop", "check the liveness probe", "--tag", "k8s")
        capsys.readouterr()

        run("search", "k8s", "--json")
        data = json.loads(capsys.readouterr().out)
        assert data[0]["distance"] == 0.5
        assert data[0]["metadata"]["sessionId"] == "s1"

    def test_users_are_isolated(self, run, capsys):
        assert run("--user", "alice", "store", "s1", "q", "a") == 0
        capsys.readouterr()

        run("--user", "bob", "sessions")
        assert capsys.readouterr().out.strip() == "No sessions found."
        run("--user", "alice", "sessions")
        assert capsys.readouterr().out.strip() == "s1"

    def test_context(self, run, capsys):
        run("store", "s1", "terraform state lock", "force-unlock it")
        capsys.readouterr()

        run("context", "terraform")
        out = capsys.readouterr().out
        assert out.startswith("## Relevant Context from Previous Conversations:")
        assert "### s1" in out

    def test_summary_missing(self, run):
        assert run("summary", "ghost") == 1

    def test_delete(self, run, capsys):
        run("store", "s1", "q", "a")
        capsys.readouterr()

        assert run("delete", "s1") == 0
        assert capsys.readouterr().out.strip() == "Deleted session s1."
        run("delete", "s1")
        assert capsys.readouterr().out.strip() == "Session s1 not found."

    def test_reload_without_index(self, run, capsys):
        assert run("reload") == 0
        assert json.loads(capsys.readouterr().out) == {"loaded": 0, "errors": 0, "skipped": 0}

    def test_status(self, run, capsys):
        assert run("status") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["vectorIndex"] == "disabled"
        assert status["vectorSearch"] is False

    def test_unsafe_session_id_rejected(self, run, capsys):
        with pytest.raises(SystemExit) as excinfo:
            run("store", "a/b", "q", "a")
        assert excinfo.value.code == 2
        assert "invalid session id" in capsys.readouterr().err
