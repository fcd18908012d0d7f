"""Configuration loader and storage paths for Agent Deck."""

import os
import yaml
from dataclasses import dataclass, field

BASE_DIR = os.path.expanduser("~/.agent-deck")
PROFILE_ENV = "AGENTDECK_PROFILE"

SESSIONS_FILE = "sessions.json"
CONFIG_FILE = "config.yaml"


def _validate_profile(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or os.sep in name:
        raise ValueError(f"invalid profile name: {name!r}")
    return name


def get_storage_root() -> str:
    """Return the directory holding all persisted state.

    When AGENTDECK_PROFILE is set the root is always redirected to
    ~/.agent-deck/profiles/<name>. Nothing in config.yaml can override it.
    """
    profile = os.environ.get(PROFILE_ENV)
    if profile:
        return os.path.join(BASE_DIR, "profiles", _validate_profile(profile))
    return BASE_DIR


def get_storage_path() -> str:
    """Return the full path to sessions.json."""
    return os.path.join(get_storage_root(), SESSIONS_FILE)


def get_config_path() -> str:
    return os.path.join(get_storage_root(), CONFIG_FILE)


@dataclass
class TmuxConfig:
    session_prefix: str = "agentdeck_"
    command_timeout: float = 5.0
    list_cache_ttl: float = 2.0
    scrollback_lines: int = 10000
    mouse_mode: bool = True
    detach_key: str = "C-q"

@dataclass
class StatusConfig:
    poll_interval: float = 2.0
    cooldown: float = 2.0    # seconds of unchanged output before idle
    tail_lines: int = 20     # trailing lines inspected for prompts/errors

@dataclass
class DefaultsConfig:
    command: str = ""
    group: str = "my-sessions"

@dataclass
class LoggingConfig:
    level: str = "WARNING"
    debug: bool = False

@dataclass
class Config:
    tmux: TmuxConfig = field(default_factory=TmuxConfig)
    status: StatusConfig = field(default_factory=StatusConfig)
    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

def load_config(path: str | None = None) -> Config:
    """Load configuration from YAML file, with defaults for missing values."""
    path = path or get_config_path()
    if os.path.exists(path):
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # The storage root is decided by the environment only
    data.pop('storage_root', None)

    return Config(
        tmux=TmuxConfig(**(data.get('tmux') or {})),
        status=StatusConfig(**(data.get('status') or {})),
        defaults=DefaultsConfig(**(data.get('defaults') or {})),
        logging=LoggingConfig(**(data.get('logging') or {})),
    )
