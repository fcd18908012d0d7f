"""Data models for managed sessions and groups."""

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from agentdeck.tmux import TmuxSession

DEFAULT_GROUP = "my-sessions"

# Checked in order; the first substring found in the command wins.
KNOWN_TOOLS = ("claude", "aider", "gemini", "codex", "cursor")
SHELL_TOOL = "shell"


class Status(str, Enum):
    RUNNING = "running"
    WAITING = "waiting"
    IDLE = "idle"
    ERROR = "error"

    @classmethod
    def parse(cls, value, default: "Status | None" = None) -> "Status":
        """Parse a persisted status string, falling back to *default* (idle)."""
        try:
            return cls(str(value).lower())
        except ValueError:
            return default or cls.IDLE


def detect_tool(command: str) -> str:
    """Determine the tool identifier from a launch command."""
    cmd = (command or "").lower()
    for tool in KNOWN_TOOLS:
        if tool in cmd:
            return tool
    return SHELL_TOOL


def extract_group_path(project_path: str) -> str:
    """Default group for a project: the name of its parent directory.

    '/home/me/work/api' -> 'work'. Falls back to DEFAULT_GROUP when the
    project sits directly under the filesystem root or has no parent.
    """
    parent = os.path.dirname(os.path.normpath(project_path or ""))
    name = os.path.basename(parent)
    if not name or name in (".", ".."):
        return DEFAULT_GROUP
    return name


def new_instance_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Instance:
    """One managed session, optionally bound to a tmux session.

    ``tmux_session`` is None both when the instance was never started and
    when its binding was lost (see ``unbind``).
    """
    title: str
    project_path: str
    group_path: str = ""
    command: str = ""
    tool: str = SHELL_TOOL
    status: Status = Status.IDLE
    id: str = field(default_factory=new_instance_id)
    created_at: datetime = field(default_factory=utcnow)
    tmux_session: Optional[TmuxSession] = None

    def __post_init__(self):
        if not self.group_path:
            self.group_path = extract_group_path(self.project_path)
        if not isinstance(self.status, Status):
            self.status = Status.parse(self.status)

    @property
    def tmux_name(self) -> str:
        """Name of the bound tmux session, or '' when unbound."""
        return self.tmux_session.name if self.tmux_session else ""

    @property
    def is_bound(self) -> bool:
        return self.tmux_session is not None

    def bind(self, session: TmuxSession) -> None:
        self.tmux_session = session

    def unbind(self) -> None:
        """Drop a binding whose tmux session no longer exists."""
        self.tmux_session = None


@dataclass
class Group:
    name: str
    path: str
    expanded: bool = True
    order: int = 0

    @property
    def parent_path(self) -> str:
        return self.path.rpartition("/")[0]

    @property
    def depth(self) -> int:
        return self.path.count("/")


@dataclass
class Snapshot:
    """Everything that is persisted: instances, groups and a timestamp."""
    instances: list = field(default_factory=list)
    groups: list = field(default_factory=list)
    updated_at: datetime = field(default_factory=utcnow)

    def is_empty(self) -> bool:
        return not self.instances and not self.groups
