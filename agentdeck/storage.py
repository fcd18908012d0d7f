"""Persistence of sessions and groups to sessions.json.

Saves are atomic: the snapshot is written to sessions.json.tmp, the previous
file is copied to sessions.json.bak, then the temp file is renamed over the
canonical one. A crash at any point leaves either the old or the new
snapshot in place, never a partial one.
"""

import json
import logging
import os
import shutil
from datetime import datetime, timezone

from agentdeck.config import get_storage_path
from agentdeck.models import Group, Instance, Snapshot, Status, extract_group_path, utcnow
from agentdeck.tmux import TmuxSession

log = logging.getLogger(__name__)


class StorageError(Exception):
    """Base class for persistence failures."""


class StorageIOError(StorageError):
    """The snapshot file could not be read or written."""


class StorageParseError(StorageError):
    """The snapshot file exists but is not a valid snapshot."""


def expand_tilde(path: str) -> str:
    """Expand a leading ~/ to the user's home directory."""
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    return path


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _parse_time(value) -> datetime:
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def instance_to_dict(inst: Instance) -> dict:
    return {
        "id": inst.id,
        "title": inst.title,
        "project_path": inst.project_path,
        "group_path": inst.group_path,
        "command": inst.command,
        "tool": inst.tool,
        "status": inst.status.value,
        "created_at": _format_time(inst.created_at),
        "tmux_session": inst.tmux_name,
    }


def group_to_dict(group: Group) -> dict:
    return {
        "name": group.name,
        "path": group.path,
        "expanded": group.expanded,
        "order": group.order,
    }


def snapshot_to_dict(snapshot: Snapshot) -> dict:
    return {
        "instances": [instance_to_dict(i) for i in snapshot.instances],
        "groups": [group_to_dict(g) for g in snapshot.groups],
        "updated_at": _format_time(snapshot.updated_at),
    }


class Storage:
    """Reads and writes the snapshot file.

    When a gateway is given, loaded instances with a tmux session name are
    reconnected through it; with a detector, their status is refreshed once
    before load() returns.
    """

    def __init__(self, path: str | None = None, gateway=None, detector=None,
                 mouse_mode: bool = True):
        self.path = path or get_storage_path()
        self.gateway = gateway
        self.detector = detector
        self.mouse_mode = mouse_mode

    @property
    def tmp_path(self) -> str:
        return self.path + ".tmp"

    @property
    def backup_path(self) -> str:
        return self.path + ".bak"

    def ensure_dir(self) -> None:
        directory = os.path.dirname(self.path)
        if not directory:
            return
        try:
            # Owner only; session data may include private project paths
            os.makedirs(directory, mode=0o700, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"failed to create storage directory: {e}") from e

    # -- Save --

    def save(self, snapshot: Snapshot) -> None:
        """Atomically write *snapshot*, stamping its updated_at."""
        snapshot.updated_at = utcnow()
        payload = json.dumps(snapshot_to_dict(snapshot), indent=2)
        self.ensure_dir()

        try:
            with open(self.tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            self._discard_tmp()
            raise StorageIOError(f"failed to write temp file: {e}") from e

        if os.path.exists(self.path):
            try:
                shutil.copyfile(self.path, self.backup_path)
            except OSError as e:
                log.warning("could not back up %s: %s", self.path, e)

        try:
            os.replace(self.tmp_path, self.path)
        except OSError as e:
            self._discard_tmp()
            raise StorageIOError(f"failed to finalize save: {e}") from e

    def save_state(self, instances: list, tree=None) -> Snapshot:
        """Save instances plus the groups of *tree* (empty groups included)."""
        groups = tree.group_list if tree is not None else []
        snapshot = Snapshot(instances=list(instances), groups=list(groups))
        self.save(snapshot)
        return snapshot

    def _discard_tmp(self) -> None:
        try:
            os.remove(self.tmp_path)
        except OSError:
            pass

    # -- Load --

    def load(self) -> Snapshot:
        """Load the canonical snapshot. A missing file is an empty snapshot."""
        if not os.path.exists(self.path):
            return Snapshot()
        return self._load_file(self.path)

    def load_backup(self) -> Snapshot:
        """Load sessions.json.bak. Used only for explicit recovery."""
        if not os.path.exists(self.backup_path):
            raise StorageIOError(f"no backup file at {self.backup_path}")
        return self._load_file(self.backup_path)

    def restore_backup(self) -> Snapshot:
        """Replace the canonical file with the backup after validating it."""
        self._read(self.backup_path)
        try:
            shutil.copyfile(self.backup_path, self.tmp_path)
            os.replace(self.tmp_path, self.path)
        except OSError as e:
            self._discard_tmp()
            raise StorageIOError(f"failed to restore backup: {e}") from e
        return self.load()

    def _load_file(self, path: str) -> Snapshot:
        snapshot = self._read(path)
        for inst in snapshot.instances:
            if inst.tmux_session is not None:
                self._reconnect(inst)
        return snapshot

    def _read(self, path: str) -> Snapshot:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except OSError as e:
            raise StorageIOError(f"failed to read {path}: {e}") from e

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise StorageParseError(f"failed to parse {path}: {e}") from e
        if not isinstance(data, dict):
            raise StorageParseError(f"{path}: expected a JSON object")

        try:
            instances = [self._instance_from_dict(d) for d in data.get("instances") or []]
            groups = [
                Group(name=g.get("name") or g["path"].rsplit("/", 1)[-1], path=g["path"],
                      expanded=bool(g.get("expanded", True)), order=int(g.get("order", 0)))
                for g in data.get("groups") or []
            ]
            updated_at = _parse_time(data.get("updated_at"))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StorageParseError(f"{path}: malformed snapshot: {e}") from e

        return Snapshot(instances=instances, groups=groups, updated_at=updated_at)

    def _instance_from_dict(self, data: dict) -> Instance:
        raw_path = data.get("project_path", "")
        # Old snapshots have no group_path: derive it from the project path
        group_path = data.get("group_path") or extract_group_path(raw_path)
        tmux_name = data.get("tmux_session") or ""
        title = data.get("title", "")
        command = data.get("command", "")
        project_path = expand_tilde(raw_path)

        session = None
        if tmux_name:
            session = TmuxSession(name=tmux_name, title=title, work_dir=project_path,
                                  command=command, prior_status=Status.parse(data.get("status")).value)

        return Instance(
            id=data["id"],
            title=title,
            project_path=project_path,
            group_path=group_path,
            command=command,
            tool=data.get("tool") or "shell",
            status=Status.parse(data.get("status")),
            created_at=_parse_time(data.get("created_at")),
            tmux_session=session,
        )

    def _reconnect(self, inst: Instance) -> None:
        if self.gateway is None:
            return
        handle = inst.tmux_session
        inst.bind(self.gateway.reconnect(
            handle.name, inst.title, inst.project_path, inst.command, handle.prior_status,
        ))
        if self.mouse_mode:
            self.gateway.enable_mouse_mode(inst.tmux_session)
        if self.detector is not None:
            # Refresh now so a stale persisted status is never shown
            self.detector.update(inst)
