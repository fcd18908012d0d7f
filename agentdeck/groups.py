"""Hierarchical groups of sessions.

Group paths are slash-delimited ("work/api"). The tree is rebuilt from the
instance list plus persisted group metadata; any path an instance refers to
is synthesized along with its ancestors, so no instance is ever orphaned.
"""

from agentdeck.models import DEFAULT_GROUP, Group


class GroupNotEmptyError(Exception):
    """Raised when deleting a group that still holds sessions."""

    def __init__(self, path: str, count: int):
        self.path = path
        self.count = count
        super().__init__(
            f"group '{path}' still contains {count} session(s); "
            "move or remove them first"
        )


def normalize_path(path: str) -> str:
    """'/work//api/' -> 'work/api'."""
    return "/".join(part.strip() for part in (path or "").split("/") if part.strip())


def _parent(path: str) -> str:
    return path.rpartition("/")[0]


def _is_within(path: str, ancestor: str) -> bool:
    return path == ancestor or path.startswith(ancestor + "/")


class GroupTree:
    """Groups indexed by path, bound to the owner's instance list.

    Mutations that touch instances (move, rename, forced delete) modify the
    Instance objects and the list passed in.
    """

    def __init__(self, instances: list, groups: list | None = None):
        self.instances = instances
        self._groups: dict[str, Group] = {}
        self._seq: dict[str, int] = {}
        self._next_seq = 0

        for group in groups or []:
            path = normalize_path(group.path)
            if not path or path in self._groups:
                continue
            self._ensure_ancestors(path)
            if path in self._groups:
                continue
            self._insert(Group(name=path.rsplit("/", 1)[-1], path=path,
                               expanded=group.expanded, order=group.order))

        for inst in instances:
            inst.group_path = normalize_path(inst.group_path) or DEFAULT_GROUP
            self.create_group(inst.group_path)

    # -- Internal --

    def _insert(self, group: Group) -> Group:
        self._groups[group.path] = group
        self._seq[group.path] = self._next_seq
        self._next_seq += 1
        return group

    def _next_order(self, parent: str) -> int:
        orders = [g.order for g in self.children(parent)]
        return max(orders) + 1 if orders else 0

    def _ensure_ancestors(self, path: str) -> None:
        parts = path.split("/")
        for i in range(1, len(parts)):
            prefix = "/".join(parts[:i])
            if prefix not in self._groups:
                self._insert(Group(name=parts[i - 1], path=prefix,
                                   order=self._next_order(_parent(prefix))))

    def _sort_key(self, group: Group):
        return (group.order, self._seq[group.path])

    def _renumber(self, parent: str) -> None:
        for i, group in enumerate(self.children(parent)):
            group.order = i

    # -- Queries --

    def get(self, path: str) -> Group | None:
        return self._groups.get(normalize_path(path))

    def __contains__(self, path: str) -> bool:
        return normalize_path(path) in self._groups

    def __len__(self) -> int:
        return len(self._groups)

    def paths(self) -> list[str]:
        return [g.path for g in self.group_list]

    def children(self, path: str = "") -> list[Group]:
        """Direct child groups of *path* ('' for the top level), in order."""
        parent = normalize_path(path)
        kids = [g for g in self._groups.values() if _parent(g.path) == parent]
        return sorted(kids, key=self._sort_key)

    def roots(self) -> list[Group]:
        return self.children("")

    def instances_in(self, path: str, recursive: bool = False) -> list:
        path = normalize_path(path)
        if recursive:
            return [i for i in self.instances if _is_within(i.group_path, path)]
        return [i for i in self.instances if i.group_path == path]

    @property
    def group_list(self) -> list[Group]:
        """All groups, parents before children, siblings in order."""
        ordered = []

        def walk(parent):
            for group in self.children(parent):
                ordered.append(group)
                walk(group.path)

        walk("")
        return ordered

    # -- Mutations --

    def create_group(self, path: str) -> Group:
        """Create *path* and any missing ancestors. Existing groups are untouched."""
        path = normalize_path(path)
        if not path:
            raise ValueError("group path must not be empty")
        existing = self._groups.get(path)
        if existing:
            return existing
        self._ensure_ancestors(path)
        return self._insert(Group(name=path.rsplit("/", 1)[-1], path=path,
                                  order=self._next_order(_parent(path))))

    def move_instance(self, instance_id: str, group_path: str):
        """Assign an instance to *group_path*, creating the group if needed."""
        for inst in self.instances:
            if inst.id == instance_id:
                break
        else:
            raise KeyError(f"no session with id {instance_id}")
        target = self.create_group(group_path)
        inst.group_path = target.path
        return inst

    def rename_group(self, old_path: str, new_path: str) -> Group:
        """Rename a group, rewriting descendant groups and member instances."""
        old = normalize_path(old_path)
        new = normalize_path(new_path)
        if old not in self._groups:
            raise KeyError(f"no group '{old_path}'")
        if not new:
            raise ValueError("group path must not be empty")
        if new == old:
            return self._groups[old]
        if _is_within(new, old):
            raise ValueError(f"cannot move group '{old}' inside itself")
        if any(_is_within(p, new) for p in self._groups if not _is_within(p, old)):
            raise ValueError(f"group '{new}' already exists")

        old_parent, new_parent = _parent(old), _parent(new)
        if new_parent:
            self._ensure_ancestors(new)
        moved_order = (self._next_order(new_parent)
                       if new_parent != old_parent else self._groups[old].order)

        rebuilt: dict[str, Group] = {}
        seq: dict[str, int] = {}
        for path, group in self._groups.items():
            if _is_within(path, old):
                group.path = new + path[len(old):]
                group.name = group.path.rsplit("/", 1)[-1]
                if path == old:
                    group.order = moved_order
            rebuilt[group.path] = group
            seq[group.path] = self._seq[path]
        self._groups = rebuilt
        self._seq = seq

        for inst in self.instances:
            if _is_within(inst.group_path, old):
                inst.group_path = new + inst.group_path[len(old):]

        if new_parent != old_parent:
            self._renumber(old_parent)
        return self._groups[new]

    def delete_group(self, path: str, force: bool = False) -> list:
        """Delete a group and its subgroups.

        Refuses with GroupNotEmptyError while any session is assigned to the
        group or a subgroup. With force=True those sessions are removed from
        the instance list and returned so the caller can kill them.
        """
        path = normalize_path(path)
        if path not in self._groups:
            raise KeyError(f"no group '{path}'")
        members = self.instances_in(path, recursive=True)
        if members and not force:
            raise GroupNotEmptyError(path, len(members))

        for gone in [p for p in self._groups if _is_within(p, path)]:
            del self._groups[gone]
            del self._seq[gone]
        for inst in members:
            self.instances.remove(inst)
        self._renumber(_parent(path))
        return members

    def reorder(self, path: str, delta: int) -> int:
        """Move a group *delta* places among its siblings. Returns its new index."""
        path = normalize_path(path)
        group = self._groups.get(path)
        if group is None:
            raise KeyError(f"no group '{path}'")
        siblings = self.children(_parent(path))
        index = siblings.index(group)
        target = max(0, min(len(siblings) - 1, index + delta))
        siblings.insert(target, siblings.pop(index))
        for i, sibling in enumerate(siblings):
            sibling.order = i
        return target

    def toggle(self, path: str) -> bool:
        """Flip the expanded flag. Returns the new value."""
        group = self.get(path)
        if group is None:
            raise KeyError(f"no group '{path}'")
        group.expanded = not group.expanded
        return group.expanded
