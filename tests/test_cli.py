"""
tests/test_cli.py -- Operator command line (main.py).

Store- and cache-backed commands run against the in-memory test backends by
patching main._open_store / main._open_sessions.
"""

from __future__ import annotations

import stat

import pytest

import main as cli
from auth.models import Identity
from auth.sessions import SessionManager
from core.config import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings():
    """Settings are cached; re-read the environment around each command."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def cli_store(store, monkeypatch):
    # main() closes the store it opened; keep the fixture's store usable.
    monkeypatch.setattr(store, "close", lambda: None)
    monkeypatch.setattr(cli, "_open_store", lambda: store)
    return store


@pytest.fixture
def cli_sessions(cache, clock, monkeypatch) -> SessionManager:
    sessions = SessionManager(cache, clock=clock)
    monkeypatch.setattr(cli, "_open_sessions", lambda: sessions)
    return sessions


class TestGenerateKeys:
    def test_writes_key_pair(self, tmp_path) -> None:
        assert cli.main(["generate-keys", "--out-dir", str(tmp_path)]) == 0
        private_path = tmp_path / "jwt_private.pem"
        assert "BEGIN PRIVATE KEY" in private_path.read_text()
        assert "BEGIN PUBLIC KEY" in (tmp_path / "jwt_public.pem").read_text()
        assert stat.S_IMODE(private_path.stat().st_mode) == 0o600

    def test_refuses_to_overwrite(self, tmp_path, capsys) -> None:
        (tmp_path / "jwt_public.pem").write_text("keep me")
        assert cli.cmd_generate_keys(str(tmp_path)) == 1
        assert (tmp_path / "jwt_public.pem").read_text() == "keep me"
        assert not (tmp_path / "jwt_private.pem").exists()
        assert "already exists" in capsys.readouterr().out


class TestStoreCommands:
    def test_seed_roles(self, cli_store, capsys) -> None:
        assert cli.main(["seed-roles"]) == 0
        out = capsys.readouterr().out
        assert "ORG_ADMIN" in out
        assert "COMPLIANCE_USER" in out

    def test_create_admin(self, cli_store, monkeypatch) -> None:
        monkeypatch.setenv("LEDGERGATE_ADMIN_PASSWORD", "operator-chosen-pass")
        get_settings.cache_clear()
        monkeypatch.setattr(cli.getpass, "getpass", lambda prompt: pytest.fail("password should come from settings"))
        assert cli.main(["create-admin", "Ops@LedgerGate.test"]) == 0
        identity = cli_store.get_by_email("ops@ledgergate.test")
        assert identity.role_name == "ORG_ADMIN"

    def test_create_admin_duplicate(self, cli_store, make_identity, capsys) -> None:
        make_identity("taken@ledgergate.test")
        assert cli.cmd_create_admin(cli_store, "taken@ledgergate.test", "operator-chosen-pass") == 1
        assert "already exists" in capsys.readouterr().out

    def test_create_admin_short_password(self, cli_store) -> None:
        assert cli.cmd_create_admin(cli_store, "short@ledgergate.test", "short") == 1
        assert cli_store.get_by_email("short@ledgergate.test") is None


class TestSessionCommands:
    def test_session_stats(self, cli_sessions, capsys) -> None:
        cli_sessions.create(Identity(email="a@ledgergate.test", id="identity-a"))
        cli_sessions.create(Identity(email="a@ledgergate.test", id="identity-a"))
        cli_sessions.create(Identity(email="b@ledgergate.test", id="identity-b"))
        assert cli.main(["session-stats"]) == 0
        out = capsys.readouterr().out
        assert "Sessions:          3" in out
        assert "Active identities: 2" in out

    def test_cleanup_sessions(self, cli_sessions, clock, capsys) -> None:
        cli_sessions.create(Identity(email="a@ledgergate.test", id="identity-a"), ttl_seconds=60)
        clock.advance(minutes=5)
        assert cli.cmd_cleanup_sessions(cli_sessions) == 0
        assert "Removed 1 expired session(s)." in capsys.readouterr().out


def test_no_command_prints_help(capsys) -> None:
    assert cli.main([]) == 0
    assert "generate-keys" in capsys.readouterr().out
