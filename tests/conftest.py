"""Shared test fixtures for agentdeck tests."""

import os
import sys

import pytest

# Add project root to path so `agentdeck` is importable
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from agentdeck.tmux import TmuxSession


class FakeGateway:
    """In-memory stand-in for TmuxGateway: a dict of session name -> pane text."""

    def __init__(self, prefix="agentdeck_"):
        self.prefix = prefix
        self.panes = {}
        self.killed = []
        self.mouse = []
        self.attached = []
        self.paths = {}
        self._counter = 0

    def make_name(self, title):
        self._counter += 1
        return f"{self.prefix}{title}_{self._counter}"

    def create(self, name, work_dir, command=""):
        self.panes[name] = ""
        return TmuxSession(name=name, work_dir=work_dir, command=command)

    def reconnect(self, name, title, work_dir, command, prior_status=None):
        return TmuxSession(name=name, title=title, work_dir=work_dir,
                           command=command, prior_status=prior_status)

    def exists(self, session):
        return session.name in self.panes

    def capture(self, session, max_lines=None):
        return self.panes.get(session.name, "")

    def kill(self, session):
        self.panes.pop(session.name, None)
        self.killed.append(session.name)
        return True

    def enable_mouse_mode(self, session):
        self.mouse.append(session.name)
        return True

    def list_sessions(self):
        return list(self.panes)

    def list_importable_sessions(self):
        return [n for n in self.panes if not n.startswith(self.prefix)]

    def session_path(self, name):
        return self.paths.get(name, "")

    def attach(self, session):
        self.attached.append(session.name)
        return 0


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def isolated_home(tmp_path, monkeypatch):
    """Point HOME at a temp dir and clear any profile selector."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.delenv("AGENTDECK_PROFILE", raising=False)
    return home


@pytest.fixture
def project_dirs(tmp_path):
    """A few project directories under tmp_path/work and tmp_path/personal."""
    paths = {}
    for group, name in [("work", "api"), ("work", "web"), ("personal", "blog")]:
        d = tmp_path / "projects" / group / name
        d.mkdir(parents=True)
        paths[name] = str(d)
    return paths
