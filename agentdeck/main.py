"""Command-line entry point for Agent Deck."""

import argparse
import json
import logging
import signal
import sys
import threading

from agentdeck import __version__
from agentdeck.config import get_storage_path, load_config
from agentdeck.manager import DuplicateInstanceError, SessionManager
from agentdeck.storage import StorageError
from agentdeck.tmux import TmuxError


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= 3:
        return text[:limit]
    return text[:limit - 3] + "..."


def _setup_logging(config) -> None:
    level = logging.DEBUG if config.logging.debug else getattr(
        logging, str(config.logging.level).upper(), logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(name)s %(levelname)s: %(message)s")


def cmd_add(manager: SessionManager, args) -> int:
    try:
        inst = manager.add(args.path, title=args.title, group=args.group,
                           command=args.cmd, start=args.start)
    except DuplicateInstanceError as e:
        print(str(e))
        return 0
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"✓ Added session: {inst.title}")
    print(f"  Path:  {inst.project_path}")
    print(f"  Group: {inst.group_path}")
    print(f"  ID:    {inst.id}")
    if inst.command:
        print(f"  Cmd:   {inst.command}")
    if inst.tmux_name:
        print(f"  Tmux:  {inst.tmux_name}")
    return 0


def cmd_list(manager: SessionManager, args) -> int:
    instances = manager.list()
    if not instances:
        print("No sessions found.")
        return 0

    if args.json:
        print(json.dumps([
            {
                "id": i.id,
                "title": i.title,
                "path": i.project_path,
                "group": i.group_path,
                "tool": i.tool,
                "command": i.command,
                "status": i.status.value,
                "created_at": i.created_at.isoformat(),
            }
            for i in instances
        ], indent=2))
        return 0

    print(f"{'TITLE':<20} {'GROUP':<15} {'STATUS':<8} {'PATH':<40} ID")
    print("-" * 100)
    for i in instances:
        print(f"{_truncate(i.title, 20):<20} {_truncate(i.group_path, 15):<15} "
              f"{i.status.value:<8} {_truncate(i.project_path, 40):<40} {i.id[:12]}")
    print(f"\nTotal: {len(instances)} sessions")
    return 0


def cmd_remove(manager: SessionManager, args) -> int:
    inst = manager.find(args.identifier)
    if inst is None or not manager.remove(inst.id):
        print(f"Error: session not found: {args.identifier}", file=sys.stderr)
        return 1
    print(f"✓ Removed session: {inst.title}")
    return 0


def cmd_restore(manager: SessionManager, args) -> int:
    snapshot = manager.storage.restore_backup()
    manager.load()
    print(f"✓ Restored {len(snapshot.instances)} sessions from {manager.storage.backup_path}")
    return 0


def cmd_watch(manager: SessionManager, args) -> int:
    manager.gateway.require_available()
    titles = {i.id: i.title for i in manager.list()}
    print(f"Watching {len(titles)} sessions (Ctrl+C to stop)")

    def on_change(changes):
        for inst_id, status in changes.items():
            print(f"{titles.get(inst_id, inst_id)}: {status.value}")
        manager.save()

    stopped = threading.Event()
    signal.signal(signal.SIGTERM, lambda sig, frame: stopped.set())
    manager.start_polling(on_change=on_change)
    try:
        stopped.wait()
    except KeyboardInterrupt:
        pass
    finally:
        manager.stop_polling()
    # tmux sessions keep running after we exit
    return 0


def cmd_attach(manager: SessionManager, args) -> int:
    manager.gateway.require_available()
    return manager.attach(args.identifier)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentdeck",
        description="Terminal session manager for AI coding agents",
    )
    parser.add_argument("-v", "--version", action="version",
                        version=f"Agent Deck v{__version__}")
    sub = parser.add_subparsers(dest="command")

    add = sub.add_parser("add", help="Add a new session")
    add.add_argument("path", help="Project directory (use '.' for current directory)")
    add.add_argument("-t", "--title", help="Session title (defaults to folder name)")
    add.add_argument("-g", "--group", help="Group path (defaults to parent folder)")
    add.add_argument("-c", "--cmd", help="Command to run (e.g. 'claude', 'aider')")
    add.add_argument("--start", action="store_true", help="Start the tmux session now")
    add.set_defaults(func=cmd_add)

    ls = sub.add_parser("list", aliases=["ls"], help="List all sessions")
    ls.add_argument("--json", action="store_true", help="Output as JSON")
    ls.set_defaults(func=cmd_list)

    rm = sub.add_parser("remove", aliases=["rm"], help="Remove a session")
    rm.add_argument("identifier", help="Session ID, ID prefix or title")
    rm.set_defaults(func=cmd_remove)

    attach = sub.add_parser("attach", help="Attach to a session (Ctrl+Q to detach)")
    attach.add_argument("identifier", help="Session ID, ID prefix or title")
    attach.set_defaults(func=cmd_attach)

    restore = sub.add_parser("restore", help="Replace sessions.json with its backup")
    restore.set_defaults(func=cmd_restore)

    watch = sub.add_parser("watch", help="Poll session status in the foreground")
    watch.set_defaults(func=cmd_watch)

    sub.add_parser("version", help="Show version")
    sub.add_parser("help", help="Show this help")
    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "version":
        print(f"Agent Deck v{__version__}")
        return 0
    if args.command == "help" or not getattr(args, "func", None):
        parser.print_help()
        return 0

    config = load_config()
    _setup_logging(config)

    try:
        manager = SessionManager.from_config(config)
        if args.command != "restore":
            manager.load()
        return args.func(manager, args)
    except TmuxError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except StorageError as e:
        print(f"Error: {e}", file=sys.stderr)
        print(f"  Storage: {get_storage_path()}", file=sys.stderr)
        return 1
    except KeyError as e:
        print(f"Error: {e.args[0] if e.args else e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
