"""Tests for the opsync command line."""

import json

import pytest

from opsync.cli.__main__ import main
from opsync.config import load_config


@pytest.fixture
def run(tmp_path, capsys):
    """Run the CLI against a database in tmp_path and return stdout."""

    def _run(*argv, db="device.db"):
        main(["--db", str(tmp_path / db), *argv])
        return capsys.readouterr().out

    return _run


class TestEntityCommands:
    def test_put_get_list_delete(self, run):
        assert "✓ Saved (create" in run("entity", "put", "links", "docs", '{"url": "https://example.com"}')
        assert json.loads(run("entity", "get", "links", "docs")) == {"url": "https://example.com"}

        listed = json.loads(run("entity", "list", "links", "--json"))
        assert listed == [{"key": "docs", "data": {"url": "https://example.com"}}]

        assert "pending sync" in run("entity", "delete", "links", "docs")
        assert "No entries" in run("entity", "list", "links")

    def test_unreplicated_table(self, run):
        assert "not replicated" in run("entity", "put", "scratch", "k", "1")

    def test_get_missing_exits(self, run):
        with pytest.raises(SystemExit) as exc_info:
            run("entity", "get", "links", "nope")
        assert exc_info.value.code == 1

    def test_invalid_table_name_exits(self, run):
        with pytest.raises(SystemExit):
            run("entity", "put", "Bad-Table", "k", "{}")


class TestKeyCommands:
    def test_generate_show_export_import(self, run):
        assert "✓ Generated sync key" in run("keys", "generate")
        assert "already configured" in run("keys", "generate")

        shown = json.loads(run("keys", "show", "--json"))
        exported = run("keys", "export").strip()

        imported = run("keys", "import", exported, db="other.db")
        assert shown["key_hash"] in imported
        assert json.loads(run("keys", "show", "--json", db="other.db"))["key_hash"] == shown["key_hash"]

    def test_import_rejects_garbage(self, run):
        with pytest.raises(SystemExit) as exc_info:
            run("keys", "import", "not-a-key")
        assert exc_info.value.code == 1

    def test_import_refuses_different_key(self, run):
        run("keys", "generate")
        run("keys", "generate", db="other.db")
        other = run("keys", "export", db="other.db").strip()
        with pytest.raises(SystemExit):
            run("keys", "import", other)

    def test_verify(self, run):
        run("keys", "generate")
        exported = run("keys", "export").strip()
        assert "✓ Key is valid" in run("keys", "verify", exported)
        with pytest.raises(SystemExit):
            run("keys", "verify", "abc")

    def test_rotate_without_server_regenerates_pending_ops(self, run):
        run("keys", "generate")
        old = json.loads(run("keys", "show", "--json"))["key_hash"]
        run("entity", "put", "links", "a", "{}")

        out = run("keys", "rotate", "--yes")

        assert "✓ Rotated sync key" in out
        shown = json.loads(run("keys", "show", "--json"))
        assert shown["key_hash"] != old
        assert shown["retired"] == [old]

    def test_rotate_cancelled(self, run, monkeypatch):
        run("keys", "generate")
        before = run("keys", "export")
        monkeypatch.setattr("builtins.input", lambda prompt: "n")
        assert "Cancelled" in run("keys", "rotate")
        assert run("keys", "export") == before


class TestSyncCommands:
    def test_status_without_server(self, run):
        out = run("sync", "status")
        assert "not configured" in out
        assert "Status:      idle" in out

    def test_status_json(self, run):
        run("entity", "put", "links", "a", "{}")
        info = json.loads(run("sync", "status", "--json"))
        assert info["pending"] == 1
        assert info["status"]["status"] == "idle"

    def test_push_without_server_exits(self, run):
        with pytest.raises(SystemExit) as exc_info:
            run("sync", "push")
        assert exc_info.value.code == 1

    def test_login_saves_credentials(self, run):
        assert "✓ Saved credentials" in run("sync", "login", "--server", "https://sync.example.com/", "--token", "t0k")
        config = load_config()
        assert config.server_url == "https://sync.example.com"
        assert config.access_token == "t0k"

    def test_login_refuses_plain_http(self, run):
        with pytest.raises(SystemExit):
            run("sync", "login", "--server", "http://sync.example.com", "--token", "t")
        assert load_config().server_url is None
