"""Session manager: the single owner of the in-memory snapshot.

Thread safety: every mutation and every poll tick holds one re-entrant lock
for its whole duration, so the background poller and user commands never
interleave and no change is observed half-applied.
"""

from __future__ import annotations

import logging
import os
import threading

from agentdeck.config import Config, load_config
from agentdeck.groups import GroupTree, normalize_path
from agentdeck.models import Instance, Status, detect_tool
from agentdeck.status import StatusDetector
from agentdeck.storage import Storage, expand_tilde
from agentdeck.tmux import TmuxGateway

log = logging.getLogger(__name__)


class DuplicateInstanceError(Exception):
    """A session already exists for the project path."""

    def __init__(self, existing: Instance):
        self.existing = existing
        super().__init__(f"Session already exists: {existing.title} ({existing.id})")


class SessionManager:
    """Owns instances and groups; applies mutations and status polls."""

    def __init__(self, storage: Storage, gateway: TmuxGateway,
                 detector: StatusDetector, config: Config | None = None):
        self.storage = storage
        self.gateway = gateway
        self.detector = detector
        self.config = config or Config()
        self._lock = threading.RLock()
        self._poller = None
        self.instances: list[Instance] = []
        self.tree = GroupTree(self.instances)

    @classmethod
    def from_config(cls, config: Config | None = None) -> "SessionManager":
        config = config or load_config()
        gateway = TmuxGateway.from_config(config)
        detector = StatusDetector.from_config(config, gateway=gateway)
        storage = Storage(gateway=gateway, detector=detector,
                          mouse_mode=config.tmux.mouse_mode)
        return cls(storage, gateway, detector, config)

    # -- Snapshot --

    def load(self) -> None:
        with self._lock:
            snapshot = self.storage.load()
            self.instances = snapshot.instances
            self.tree = GroupTree(self.instances, snapshot.groups)

    def save(self) -> None:
        with self._lock:
            self.storage.save_state(self.instances, self.tree)

    def _rebuild(self) -> None:
        self.tree = GroupTree(self.instances, self.tree.group_list)

    # -- Lookup --

    def list(self) -> list[Instance]:
        with self._lock:
            return list(self.instances)

    def find(self, identifier: str) -> Instance | None:
        """Exact id, unambiguous id prefix, or exact title; first in list order."""
        if not identifier:
            return None
        with self._lock:
            prefixed = [i for i in self.instances if i.id.startswith(identifier)]
            for inst in self.instances:
                if inst.id == identifier or inst.title == identifier:
                    return inst
                if len(prefixed) == 1 and inst is prefixed[0]:
                    return inst
            return None

    def _require(self, identifier: str) -> Instance:
        inst = self.find(identifier)
        if inst is None:
            raise KeyError(f"session not found: {identifier}")
        return inst

    # -- Instance mutations --

    def add(self, path: str, title: str | None = None, group: str | None = None,
            command: str | None = None, start: bool = False) -> Instance:
        """Register a project directory as a new session and save."""
        path = os.path.abspath(expand_tilde(path))
        if not os.path.isdir(path):
            raise ValueError(f"path is not a directory: {path}")
        command = command if command is not None else self.config.defaults.command

        with self._lock:
            for inst in self.instances:
                if inst.project_path == path:
                    raise DuplicateInstanceError(inst)

            inst = Instance(
                title=title or os.path.basename(path),
                project_path=path,
                group_path=normalize_path(group) if group else "",
                command=command,
                tool=detect_tool(command),
            )
            if start:
                self._start(inst)
            self.instances.append(inst)
            self.tree.create_group(inst.group_path)
            self.save()
            log.info("added session %s (%s)", inst.title, inst.id)
            return inst

    def remove(self, identifier: str) -> bool:
        """Remove a session and kill its tmux session. False if not found."""
        with self._lock:
            inst = self.find(identifier)
            if inst is None:
                return False
            self._kill(inst)
            self.instances.remove(inst)
            self.detector.forget(inst.id)
            self._rebuild()
            self.save()
            log.info("removed session %s (%s)", inst.title, inst.id)
            return True

    def _kill(self, inst: Instance) -> None:
        if inst.tmux_session is None:
            return
        if not self.gateway.kill(inst.tmux_session):
            log.warning("tmux session %s for %s may still be running",
                        inst.tmux_name, inst.title)

    def rename(self, identifier: str, title: str) -> Instance:
        if not title.strip():
            raise ValueError("title must not be empty")
        with self._lock:
            inst = self._require(identifier)
            inst.title = title.strip()
            self.save()
            return inst

    def move(self, identifier: str, group_path: str) -> Instance:
        with self._lock:
            inst = self._require(identifier)
            self.tree.move_instance(inst.id, group_path)
            self.save()
            return inst

    def start(self, identifier: str) -> Instance:
        """Bind the session to a running tmux session, creating one if needed."""
        with self._lock:
            inst = self._require(identifier)
            self._start(inst)
            self.save()
            return inst

    def _start(self, inst: Instance) -> None:
        if inst.tmux_session is not None:
            if self.gateway.exists(inst.tmux_session):
                return
            inst.unbind()
            self.detector.forget(inst.id)
        name = self.gateway.make_name(inst.title)
        session = self.gateway.create(name, inst.project_path, inst.command)
        session.title = inst.title
        inst.bind(session)
        if self.config.tmux.mouse_mode:
            self.gateway.enable_mouse_mode(session)
        self.detector.update(inst)

    def attach(self, identifier: str) -> int:
        """Attach the terminal to a session; polling pauses until detach."""
        with self._lock:
            inst = self._require(identifier)
            self._start(inst)
            self.save()
            session = inst.tmux_session
        poller = self._poller
        if poller is not None:
            poller.pause()
        try:
            return self.gateway.attach(session)
        finally:
            if poller is not None:
                poller.resume()

    def import_sessions(self) -> list[Instance]:
        """Adopt tmux sessions created outside Agent Deck as shell sessions."""
        with self._lock:
            bound = {i.tmux_name for i in self.instances if i.tmux_name}
            added = []
            for name in self.gateway.list_importable_sessions():
                if name in bound:
                    continue
                path = self.gateway.session_path(name) or os.path.expanduser("~")
                inst = Instance(title=name, project_path=path,
                                group_path=self.config.defaults.group)
                inst.bind(self.gateway.reconnect(name, name, path, ""))
                self.detector.update(inst)
                self.instances.append(inst)
                added.append(inst)
            if added:
                self._rebuild()
                self.save()
            return added

    # -- Group mutations --

    def create_group(self, path: str):
        with self._lock:
            group = self.tree.create_group(path)
            self.save()
            return group

    def rename_group(self, old_path: str, new_path: str):
        with self._lock:
            group = self.tree.rename_group(old_path, new_path)
            self.save()
            return group

    def delete_group(self, path: str, force: bool = False) -> list[Instance]:
        """Delete a group; with force, also remove and kill its sessions."""
        with self._lock:
            removed = self.tree.delete_group(path, force=force)
            for inst in removed:
                self._kill(inst)
                self.detector.forget(inst.id)
            self.save()
            return removed

    def reorder_group(self, path: str, delta: int) -> int:
        with self._lock:
            index = self.tree.reorder(path, delta)
            self.save()
            return index

    def toggle_group(self, path: str) -> bool:
        with self._lock:
            expanded = self.tree.toggle(path)
            self.save()
            return expanded

    # -- Polling --

    def poll(self) -> dict[str, Status]:
        """Refresh the status of every bound session.

        Returns {instance_id: new_status} for sessions whose status changed.
        Does not save.
        """
        changes = {}
        with self._lock:
            for inst in self.instances:
                if inst.tmux_session is None:
                    continue
                before = inst.status
                result = self.detector.update(inst)
                if result.absent:
                    log.warning("tmux session %s for %s is gone", inst.tmux_name, inst.title)
                if inst.status != before:
                    changes[inst.id] = inst.status
        return changes

    def start_polling(self, interval: float | None = None, on_change=None) -> "Poller":
        if self._poller is None:
            self._poller = Poller(self, interval or self.config.status.poll_interval,
                                  on_change=on_change)
            self._poller.start()
        return self._poller

    def stop_polling(self) -> None:
        if self._poller is not None:
            self._poller.stop()
            self._poller = None


class Poller:
    """Background thread calling manager.poll() every *interval* seconds."""

    def __init__(self, manager: SessionManager, interval: float, on_change=None):
        self.manager = manager
        self.interval = interval
        self.on_change = on_change
        self._stop = threading.Event()
        self._paused = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)

    def pause(self) -> None:
        self._paused.set()

    def resume(self) -> None:
        self._paused.clear()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            if self._paused.is_set():
                continue
            try:
                changes = self.manager.poll()
                if changes and self.on_change:
                    self.on_change(changes)
            except Exception:
                log.exception("status poll failed")
