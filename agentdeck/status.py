"""Status detection from captured pane text.

Classifies each session as running, waiting, idle or error by hashing the
captured output and matching tool-specific patterns against its last lines.
Nothing here persists; callers save the updated instances themselves.
"""

import hashlib
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Optional

from agentdeck.models import Status, SHELL_TOOL
from agentdeck.tmux import SessionNotFoundError

log = logging.getLogger(__name__)

DEFAULT_COOLDOWN = 2.0
DEFAULT_TAIL_LINES = 20
DEFAULT_CAPTURE_LINES = 50

# Prompts must sit in the last few non-blank lines; once answered they
# scroll away. Error signatures get a slightly wider window.
PROMPT_LINES = 3
ERROR_LINES = 5


def _compile(*patterns: str) -> tuple:
    return tuple(re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns)


# Yes/no confirmations any program may print
COMMON_WAITING = (
    r"\(y/n\)\s*[:?]?\s*$",
    r"\[y/n\]\s*[:?]?\s*$",
    r"\(yes/no(/\[fingerprint\])?\)\s*[:?]?\s*$",
    r"continue\?\s*$",
)


@dataclass(frozen=True)
class ToolPatterns:
    """Busy indicators, input prompts and error signatures for one tool."""
    name: str
    busy: tuple = ()
    waiting: tuple = ()
    error: tuple = ()

    def is_busy(self, text: str) -> bool:
        return any(p.search(text) for p in self.busy)

    def is_waiting(self, text: str) -> bool:
        return any(p.search(text) for p in self.waiting)

    def is_error(self, text: str) -> bool:
        return any(p.search(text) for p in self.error)


def _tool(name: str, busy=(), waiting=(), error=()) -> ToolPatterns:
    return ToolPatterns(
        name=name,
        busy=_compile(*busy),
        waiting=_compile(*COMMON_WAITING, *waiting),
        error=_compile(*error),
    )


TOOL_PATTERNS = {
    "claude": _tool(
        "claude",
        busy=(r"esc to interrupt", r"ctrl\+c to interrupt"),
        waiting=(
            r"do you want to (proceed|make this edit|create)",
            r"^\s*❯\s*1\.\s*yes",
            r"allow .+\?\s*$",
        ),
        error=(r"API Error", r"^\s*⎿\s+Error:", r"credit balance is too low"),
    ),
    "aider": _tool(
        "aider",
        busy=(r"waiting for .+\.\.\.", r"^\s*[░█▒]+\s"),
        waiting=(r"\(Y\)es/\(N\)o", r"\[Yes\]:\s*$"),
        error=(r"litellm\.\w+Error", r"Traceback \(most recent call last\)"),
    ),
    "gemini": _tool(
        "gemini",
        busy=(r"esc to cancel",),
        waiting=(r"allow execution", r"apply this change\?", r"waiting for user confirmation"),
        error=(r"\[API Error", r"quota exceeded"),
    ),
    "codex": _tool(
        "codex",
        busy=(r"esc to interrupt", r"^\s*working\b"),
        waiting=(r"allow command\?", r"\bapprove\b.*\?\s*$", r"\[y/N\]"),
        error=(r"stream error", r"^\s*error:"),
    ),
    "cursor": _tool(
        "cursor",
        busy=(r"generating", r"ctrl\+c to stop"),
        waiting=(r"run this command\?", r"\(y\) \(enter\)"),
        error=(r"^\s*error:", r"connection failed"),
    ),
    SHELL_TOOL: _tool(
        SHELL_TOOL,
        waiting=(r"password( for [^:]+)?:\s*$", r"\[y/N\]\s*$", r"\[Y/n\]\s*$", r"\(Y/n\)\s*$"),
        error=(
            r"command not found",
            r"Traceback \(most recent call last\)",
            r"^\s*(fatal|error):",
            r"segmentation fault",
        ),
    ),
}


def patterns_for(tool: str) -> ToolPatterns:
    """Pattern set for *tool*; unknown tools get the shell fallback."""
    return TOOL_PATTERNS.get((tool or "").lower(), TOOL_PATTERNS[SHELL_TOOL])


def normalize_lines(content: str) -> list[str]:
    """Split captured text, strip trailing whitespace and trailing blank lines."""
    lines = [line.rstrip() for line in (content or "").split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def fingerprint(lines: list[str]) -> str:
    return hashlib.sha256("\n".join(lines).encode("utf-8", "replace")).hexdigest()


def _last_non_blank(lines: list[str], count: int) -> str:
    picked = [line for line in lines if line.strip()][-count:]
    return "\n".join(picked)


@dataclass
class ActivityState:
    """Per-instance history between polls."""
    fingerprint: Optional[str] = None
    changed_at: float = 0.0
    status: Optional[Status] = None


@dataclass
class Classification:
    status: Status
    absent: bool = False          # tmux session missing or unresponsive
    changed: bool = False         # output differs from the previous poll
    reasons: list = field(default_factory=list)


class StatusDetector:
    """Infers session status from pane text plus an unchanged-output timer."""

    def __init__(self, gateway=None, cooldown: float = DEFAULT_COOLDOWN,
                 tail_lines: int = DEFAULT_TAIL_LINES,
                 capture_lines: int = DEFAULT_CAPTURE_LINES, clock=time.monotonic):
        self.gateway = gateway
        self.cooldown = cooldown
        self.tail_lines = tail_lines
        self.capture_lines = capture_lines
        self._clock = clock
        self._states: dict[str, ActivityState] = {}

    @classmethod
    def from_config(cls, config, gateway=None) -> "StatusDetector":
        return cls(
            gateway=gateway,
            cooldown=config.status.cooldown,
            tail_lines=config.status.tail_lines,
        )

    def forget(self, key: str) -> None:
        self._states.pop(key, None)

    def state(self, key: str) -> Optional[ActivityState]:
        return self._states.get(key)

    def classify(self, key: str, tool: str, content: str,
                 prior: Optional[Status] = None) -> Classification:
        """Classify one capture of the pane identified by *key*.

        *prior* is used on the first observation of a key so a restarted
        process keeps showing the persisted status until the output says
        otherwise.
        """
        now = self._clock()
        state = self._states.get(key)
        first = state is None
        if first:
            state = ActivityState(changed_at=now)
            self._states[key] = state

        lines = normalize_lines(content)
        if not lines:
            state.fingerprint = ""
            state.changed_at = now
            state.status = Status.IDLE
            return Classification(Status.IDLE, reasons=["empty"])

        digest = fingerprint(lines)
        changed = digest != state.fingerprint
        patterns = patterns_for(tool)
        tail = "\n".join(lines[-self.tail_lines:])

        if changed:
            state.fingerprint = digest
            state.changed_at = now

        if patterns.is_waiting(_last_non_blank(lines, PROMPT_LINES)):
            status, reason = Status.WAITING, "prompt"
        elif patterns.is_error(_last_non_blank(lines, ERROR_LINES)):
            status, reason = Status.ERROR, "error signature"
        elif first and prior is not None and prior != Status.ERROR:
            status, reason = prior, "prior"
        elif changed:
            status, reason = Status.RUNNING, "output changed"
        elif now - state.changed_at > self.cooldown:
            status, reason = Status.IDLE, "cooldown elapsed"
        elif patterns.is_busy(tail):
            status, reason = Status.RUNNING, "busy indicator"
        else:
            status, reason = state.status or Status.RUNNING, "within cooldown"

        if status != state.status:
            log.debug("%s: %s -> %s (%s)", key, state.status, status.value, reason)
        state.status = status
        return Classification(status, changed=changed, reasons=[reason])

    def update(self, instance) -> Classification:
        """Capture and classify a bound instance, storing the result on it."""
        session = instance.tmux_session
        if session is None:
            return Classification(instance.status, reasons=["unbound"])

        try:
            if not self.gateway.exists(session):
                raise SessionNotFoundError(session.name)
            content = self.gateway.capture(session, self.capture_lines)
        except SessionNotFoundError:
            log.debug("%s: tmux session %s absent", instance.id, session.name)
            self.forget(instance.id)
            instance.status = Status.ERROR
            return Classification(Status.ERROR, absent=True, reasons=["absent"])

        prior = Status.parse(session.prior_status) if session.prior_status else None
        session.prior_status = None
        result = self.classify(instance.id, instance.tool, content, prior=prior)
        instance.status = result.status
        return result
