"""Tests for the tmux gateway."""

import subprocess
from unittest.mock import patch, MagicMock

import pytest

from agentdeck.tmux import (
    TmuxGateway, TmuxSession, TmuxUnavailableError, SessionCreationError,
    SessionNotFoundError, sanitize_name,
)


def _cmd(mock_run, index=-1):
    return " ".join(mock_run.call_args_list[index][0][0])


class TestTmuxAvailable:

    @patch("agentdeck.tmux.subprocess.run")
    def test_tmux_available_when_installed(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        assert TmuxGateway().is_available() is True

    @patch("agentdeck.tmux.subprocess.run")
    def test_tmux_not_available_when_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        assert TmuxGateway().is_available() is False

    @patch("agentdeck.tmux.subprocess.run")
    def test_require_available_raises_with_install_hint(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        with pytest.raises(TmuxUnavailableError) as exc:
            TmuxGateway().require_available()
        assert "brew install tmux" in str(exc.value)


class TestCreate:

    @patch("agentdeck.tmux.subprocess.run")
    def test_create_passes_work_dir_and_command(self, mock_run):
        def side_effect(cmd, **kwargs):
            if "has-session" in cmd:
                return MagicMock(returncode=1, stdout="", stderr="")
            return MagicMock(returncode=0, stdout="", stderr="")
        mock_run.side_effect = side_effect

        session = TmuxGateway().create("agentdeck_api_1", "/src/api", "claude")

        assert session.name == "agentdeck_api_1"
        assert session.work_dir == "/src/api"
        args = mock_run.call_args_list[-1][0][0]
        assert args[:6] == ["tmux", "new-session", "-d", "-s", "agentdeck_api_1", "-c"]
        assert args[6] == "/src/api"
        assert args[7] == "claude"

    @patch("agentdeck.tmux.subprocess.run")
    def test_create_rejects_name_collision(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        with pytest.raises(SessionCreationError):
            TmuxGateway().create("taken", "/tmp")
        assert "new-session" not in _cmd(mock_run)

    @patch("agentdeck.tmux.subprocess.run")
    def test_create_fails_when_tmux_errors(self, mock_run):
        def side_effect(cmd, **kwargs):
            if "has-session" in cmd:
                return MagicMock(returncode=1, stdout="", stderr="")
            return MagicMock(returncode=1, stdout="", stderr="no server")
        mock_run.side_effect = side_effect
        with pytest.raises(SessionCreationError):
            TmuxGateway().create("x", "/tmp")

    @patch("agentdeck.tmux.subprocess.run")
    def test_create_fails_when_tmux_missing(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        with pytest.raises(SessionCreationError):
            TmuxGateway().create("x", "/tmp")

    def test_make_name_has_prefix_and_is_unique(self):
        gateway = TmuxGateway(prefix="agentdeck_")
        a = gateway.make_name("My Project!")
        b = gateway.make_name("My Project!")
        assert a.startswith("agentdeck_My-Project_")
        assert a != b

    def test_sanitize_name_falls_back(self):
        assert sanitize_name("???") == "session"


class TestKill:

    @patch("agentdeck.tmux.subprocess.run")
    def test_kill_absent_session_is_noop(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="", stderr="")
        assert TmuxGateway().kill(TmuxSession(name="gone")) is True
        assert all("kill-session" not in " ".join(c[0][0]) for c in mock_run.call_args_list)

    @patch("agentdeck.tmux.subprocess.run")
    def test_kill_without_tmux_is_noop(self, mock_run):
        mock_run.side_effect = FileNotFoundError()
        assert TmuxGateway().kill(TmuxSession(name="gone")) is True

    @patch("agentdeck.tmux.subprocess.run")
    def test_kill_live_session(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        assert TmuxGateway().kill(TmuxSession(name="live")) is True
        assert "kill-session -t =live" in _cmd(mock_run)


class TestCapture:

    @patch("agentdeck.tmux.subprocess.run")
    def test_capture_returns_content(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="line1\nline2\n")
        result = TmuxGateway().capture(TmuxSession(name="s"), max_lines=200)
        assert result == "line1\nline2\n"
        assert "-S -200" in _cmd(mock_run)

    @patch("agentdeck.tmux.subprocess.run")
    def test_capture_defaults_to_scrollback(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="")
        TmuxGateway(scrollback=30000).capture(TmuxSession(name="s"))
        assert "-S -30000" in _cmd(mock_run)

    @patch("agentdeck.tmux.subprocess.run")
    def test_capture_empty_when_session_missing(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="")
        assert TmuxGateway().capture(TmuxSession(name="gone")) == ""

    @patch("agentdeck.tmux.subprocess.run")
    def test_capture_timeout_raises_not_found(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=5)
        with pytest.raises(SessionNotFoundError):
            TmuxGateway().capture(TmuxSession(name="slow"))


class TestExists:

    @patch("agentdeck.tmux.subprocess.run")
    def test_exists_uses_exact_match(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        assert TmuxGateway().exists(TmuxSession(name="api")) is True
        assert "has-session -t =api" in _cmd(mock_run)

    @patch("agentdeck.tmux.subprocess.run")
    def test_timeout_counts_as_absent(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="tmux", timeout=5)
        assert TmuxGateway().exists(TmuxSession(name="api")) is False


class TestListSessions:

    @patch("agentdeck.tmux.subprocess.run")
    def test_list_sessions_returns_session_names(self, mock_run):
        mock_run.return_value = MagicMock(
            returncode=0, stdout="agentdeck_api_1\nmy-api\nfrontend\n",
        )
        gateway = TmuxGateway()
        assert gateway.list_sessions() == ["agentdeck_api_1", "my-api", "frontend"]
        assert gateway.list_managed_sessions() == ["agentdeck_api_1"]
        assert gateway.list_importable_sessions() == ["my-api", "frontend"]

    @patch("agentdeck.tmux.subprocess.run")
    def test_list_sessions_empty_when_no_server(self, mock_run):
        mock_run.return_value = MagicMock(returncode=1, stdout="")
        assert TmuxGateway().list_sessions() == []

    @patch("agentdeck.tmux.subprocess.run")
    def test_listing_is_cached_within_ttl(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="a\n")
        now = [100.0]
        gateway = TmuxGateway(cache_ttl=2.0, clock=lambda: now[0])

        gateway.list_sessions()
        now[0] += 1.0
        gateway.list_sessions()
        assert mock_run.call_count == 1

        now[0] += 1.5
        gateway.list_sessions()
        assert mock_run.call_count == 2

    @patch("agentdeck.tmux.subprocess.run")
    def test_kill_invalidates_cache(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout="a\n", stderr="")
        gateway = TmuxGateway(clock=lambda: 100.0)
        gateway.list_sessions()
        gateway.kill(TmuxSession(name="a"))
        calls_before = mock_run.call_count
        gateway.list_sessions()
        assert mock_run.call_count == calls_before + 1


class TestMouseMode:

    @patch("agentdeck.tmux.subprocess.run")
    def test_enable_mouse_mode_is_repeatable(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0)
        gateway = TmuxGateway()
        session = TmuxSession(name="s")
        assert gateway.enable_mouse_mode(session) is True
        assert gateway.enable_mouse_mode(session) is True
        assert "set-option -t =s mouse on" in _cmd(mock_run)


class TestReconnect:

    @patch("agentdeck.tmux.subprocess.run")
    def test_reconnect_runs_no_tmux_commands(self, mock_run):
        session = TmuxGateway().reconnect("agentdeck_x", "x", "/src/x", "claude", "waiting")
        assert session.prior_status == "waiting"
        assert session.work_dir == "/src/x"
        mock_run.assert_not_called()
