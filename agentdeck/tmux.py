"""Tmux gateway: the only code that talks to the tmux server.

Creates, reconnects, captures, lists and kills tmux sessions by running the
tmux binary as a subprocess. Sessions outlive this process; nothing here
kills a session unless ``kill`` is called explicitly.
"""

import logging
import os
import re
import subprocess
import time
import uuid
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

DEFAULT_PREFIX = "agentdeck_"
DEFAULT_TIMEOUT = 5.0
DEFAULT_SCROLLBACK = 10000
LIST_CACHE_TTL = 2.0

INSTALL_HINT = (
    "Agent Deck requires tmux. Install with:\n"
    "  brew install tmux        (macOS)\n"
    "  sudo apt install tmux    (Debian/Ubuntu)"
)


class TmuxError(Exception):
    """Base class for tmux gateway failures."""


class TmuxUnavailableError(TmuxError):
    """tmux is not installed or cannot be executed."""

    def __init__(self, message: str = "tmux not found in PATH"):
        super().__init__(f"{message}\n\n{INSTALL_HINT}")


class SessionCreationError(TmuxError):
    """A new tmux session could not be created."""


class SessionNotFoundError(TmuxError):
    """The tmux session is gone, or tmux did not answer in time."""


@dataclass
class TmuxSession:
    """Handle to a tmux session.

    ``prior_status`` is the status persisted before a restart; it is used
    for the first classification so the display does not flicker.
    """
    name: str
    title: str = ""
    work_dir: str = ""
    command: str = ""
    prior_status: Optional[str] = None


def sanitize_name(title: str) -> str:
    """Make a title safe for use inside a tmux session name."""
    cleaned = re.sub(r"[^A-Za-z0-9_-]+", "-", title or "").strip("-")
    return cleaned[:40] or "session"


class TmuxGateway:
    """Runs tmux subcommands with a timeout and caches session listings."""

    def __init__(self, prefix: str = DEFAULT_PREFIX, timeout: float = DEFAULT_TIMEOUT,
                 cache_ttl: float = LIST_CACHE_TTL, scrollback: int = DEFAULT_SCROLLBACK,
                 detach_key: str = "C-q", clock=time.monotonic):
        self.prefix = prefix
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.scrollback = scrollback
        self.detach_key = detach_key
        self._clock = clock
        self._list_cache: list[str] | None = None
        self._list_cached_at = 0.0

    @classmethod
    def from_config(cls, config) -> "TmuxGateway":
        return cls(
            prefix=config.tmux.session_prefix,
            timeout=config.tmux.command_timeout,
            cache_ttl=config.tmux.list_cache_ttl,
            scrollback=config.tmux.scrollback_lines,
            detach_key=config.tmux.detach_key,
        )

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["tmux", *args], capture_output=True, text=True, timeout=self.timeout,
        )

    def invalidate_cache(self) -> None:
        self._list_cache = None

    # -- Availability --

    def is_available(self) -> bool:
        """Check if tmux is installed and accessible."""
        try:
            result = self._run("-V")
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def require_available(self) -> None:
        if not self.is_available():
            raise TmuxUnavailableError()

    # -- Session lifecycle --

    def make_name(self, title: str) -> str:
        """Unique session name: prefix + sanitized title + short suffix."""
        return f"{self.prefix}{sanitize_name(title)}_{uuid.uuid4().hex[:8]}"

    def create(self, name: str, work_dir: str, command: str = "") -> TmuxSession:
        """Start a detached tmux session in *work_dir* running *command*."""
        if self.exists(TmuxSession(name=name)):
            raise SessionCreationError(f"tmux session already exists: {name}")

        args = ["new-session", "-d", "-s", name, "-c", work_dir]
        if command:
            args.append(command)
        try:
            result = self._run(*args)
        except FileNotFoundError as e:
            raise SessionCreationError("tmux not found in PATH") from e
        except subprocess.TimeoutExpired as e:
            raise SessionCreationError(f"tmux timed out creating {name}") from e
        finally:
            self.invalidate_cache()

        if result.returncode != 0:
            raise SessionCreationError(
                f"failed to create tmux session {name}: {result.stderr.strip()}"
            )
        log.debug("created tmux session %s in %s", name, work_dir)
        return TmuxSession(name=name, work_dir=work_dir, command=command)

    def reconnect(self, name: str, title: str, work_dir: str, command: str,
                  prior_status: Optional[str] = None) -> TmuxSession:
        """Bind to an existing tmux session without creating anything."""
        return TmuxSession(name=name, title=title, work_dir=work_dir,
                           command=command, prior_status=prior_status)

    def exists(self, session: TmuxSession) -> bool:
        """True if the session is alive. A timeout counts as absent."""
        try:
            result = self._run("has-session", "-t", f"={session.name}")
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    def kill(self, session: TmuxSession) -> bool:
        """Kill the session. Killing an absent session is a no-op.

        Returns False only if tmux did not answer in time.
        """
        if not self.exists(session):
            return True
        try:
            result = self._run("kill-session", "-t", f"={session.name}")
        except FileNotFoundError:
            return True
        except subprocess.TimeoutExpired:
            log.warning("timed out killing tmux session %s", session.name)
            return False
        finally:
            self.invalidate_cache()
        if result.returncode != 0:
            # Died between the check and the kill
            log.debug("kill-session %s: %s", session.name, result.stderr.strip())
        return True

    def enable_mouse_mode(self, session: TmuxSession) -> bool:
        """Turn on mouse scrolling for the session. Safe to repeat."""
        try:
            result = self._run("set-option", "-t", f"={session.name}", "mouse", "on")
            return result.returncode == 0
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return False

    # -- Content --

    def capture(self, session: TmuxSession, max_lines: int | None = None) -> str:
        """Capture the last *max_lines* lines of the session's pane.

        Returns '' if the session does not exist. Raises
        SessionNotFoundError if tmux does not answer in time.
        """
        lines = max_lines or self.scrollback
        try:
            result = self._run(
                "capture-pane", "-p", "-J", "-t", f"={session.name}:", "-S", f"-{lines}",
            )
        except FileNotFoundError:
            return ""
        except subprocess.TimeoutExpired as e:
            raise SessionNotFoundError(f"timed out capturing {session.name}") from e
        if result.returncode != 0:
            return ""
        return result.stdout

    # -- Discovery --

    def list_sessions(self) -> list[str]:
        """List all tmux session names, including ones we did not create."""
        now = self._clock()
        if self._list_cache is not None and now - self._list_cached_at < self.cache_ttl:
            return list(self._list_cache)
        try:
            result = self._run("list-sessions", "-F", "#{session_name}")
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return []
        if result.returncode != 0:
            # No server running means no sessions
            names = []
        else:
            names = [s.strip() for s in result.stdout.strip().split("\n") if s.strip()]
        self._list_cache = names
        self._list_cached_at = now
        return list(names)

    def list_managed_sessions(self) -> list[str]:
        return [n for n in self.list_sessions() if n.startswith(self.prefix)]

    def list_importable_sessions(self) -> list[str]:
        """Sessions created outside Agent Deck."""
        return [n for n in self.list_sessions() if not n.startswith(self.prefix)]

    def session_path(self, name: str) -> str:
        """Current working directory of the session's active pane, or ''."""
        try:
            result = self._run("display-message", "-p", "-t", f"={name}:", "#{pane_current_path}")
        except (FileNotFoundError, subprocess.TimeoutExpired):
            return ""
        if result.returncode != 0:
            return ""
        return result.stdout.strip()

    # -- Attach --

    def attach(self, session: TmuxSession) -> int:
        """Hand the terminal to the session until the detach key is pressed.

        Blocks without a timeout. Returns tmux's exit code. The session keeps
        running after detach.
        """
        try:
            self._run("bind-key", "-n", self.detach_key, "detach-client")
        except subprocess.TimeoutExpired:
            log.warning("timed out binding detach key %s", self.detach_key)
        env = dict(os.environ)
        env.pop("TMUX", None)  # allow attaching from inside another tmux client
        result = subprocess.run(
            ["tmux", "attach-session", "-t", f"={session.name}"], env=env,
        )
        return result.returncode
