"""Mount a dataset's snapshot tree at a parallel path hierarchy."""
from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from zbr import report
from zbr.executor import ExecutorError
from zbr.models import Label, Snapshot

if TYPE_CHECKING:
    from zbr.executor import Executor
    from zbr.zfs import SnapshotManager

_FINDMNT_ESCAPE = re.compile(r"\\x([0-9a-fA-F]{2})")


class MountError(Exception):
    """Raised when mounting a snapshot tree (or unwinding it) fails."""


@dataclass
class MountNode:
    dataset: str
    path: str
    children: list["MountNode"] = field(default_factory=list)

    def preorder(self):
        yield self
        for child in self.children:
            yield from child.preorder()


@dataclass
class MountHandle:
    dataset: str
    label: str
    root_path: str
    # Snapshot full names paired with their mount point, in mount order.
    mounted: list[tuple[str, str]] = field(default_factory=list)


def build_tree(root: str, datasets: list[str], root_path: str) -> MountNode:
    """Arrange `datasets` (root plus descendants) as a tree under root_path.

    A descendant's path is root_path plus its name with the root prefix
    stripped, so ipool/a/b under ipool/a lands at <root_path>/b.
    """
    if root not in datasets:
        raise MountError(f"{root} has no snapshot to mount")
    nodes = {root: MountNode(dataset=root, path=root_path)}
    for name in sorted(datasets, key=lambda d: (d.count("/"), d)):
        if name == root:
            continue
        if not name.startswith(root + "/"):
            raise MountError(f"{name} is not a descendant of {root}")
        node = MountNode(dataset=name, path=root_path + name[len(root):])
        parent = name.rsplit("/", 1)[0]
        # Intermediate datasets without the snapshot are skipped over.
        while parent not in nodes:
            parent = parent.rsplit("/", 1)[0]
        nodes[parent].children.append(node)
        nodes[name] = node
    return nodes[root]


def _unescape(target: str) -> str:
    return _FINDMNT_ESCAPE.sub(lambda m: chr(int(m.group(1), 16)), target)


class MountTree:
    """Mount and unmount snapshot trees below a private mount root."""

    def __init__(self, executor: "Executor", snapshots: "SnapshotManager", mount_root: str):
        self.executor = executor
        self.snapshots = snapshots
        self.mount_root = mount_root.rstrip("/")

    def path_for(self, dataset: str) -> str:
        return posixpath.join(self.mount_root, dataset)

    def mount(self, dataset: str, label: Label | str, recursive: bool) -> MountHandle:
        label = str(label)
        datasets = self.snapshots.datasets_with_snapshot(dataset, label, recursive)
        tree = build_tree(dataset, datasets, self.path_for(dataset))
        handle = MountHandle(dataset=dataset, label=label, root_path=tree.path)

        for node in tree.preorder():
            snap = Snapshot(dataset=node.dataset, name=label).full_name
            try:
                self.executor.run(["mkdir", "-p", node.path])
                self.executor.run(["mount", "-t", "zfs", snap, node.path])
            except ExecutorError as e:
                report.error(f"mount {snap} at {node.path}: {e}")
                self._unwind(handle)
                raise MountError(f"Failed to mount {snap}: {e}") from e
            handle.mounted.append((snap, node.path))
        return handle

    def _unwind(self, handle: MountHandle) -> list[str]:
        """Unmount everything in handle in reverse order; return failed paths."""
        failed = []
        while handle.mounted:
            snap, path = handle.mounted.pop()
            try:
                self.executor.run(["umount", path])
            except ExecutorError as e:
                report.error(f"umount {path}: {e}")
                failed.append(path)
        return failed

    def unmount(self, handle: MountHandle) -> None:
        failed = self._unwind(handle)
        if failed:
            raise MountError(f"Failed to unmount: {', '.join(failed)}")

    def mounted_under_root(self) -> list[str]:
        """Mount points below the mount root, deepest first."""
        output = self.executor.run(["findmnt", "-rn", "-o", "TARGET"])
        prefix = self.mount_root + "/"
        targets = {
            _unescape(line.strip())
            for line in output.splitlines()
            if line.strip()
        }
        inside = [t for t in targets if t.startswith(prefix)]
        return sorted(inside, key=lambda t: (t.count("/"), t), reverse=True)

    def unmount_all(self) -> int:
        """Unmount every mount below the root, deepest first.

        Individual failures are reported and skipped. Returns the failure count.
        """
        failures = 0
        for path in self.mounted_under_root():
            try:
                self.executor.run(["umount", path])
                report.step(f"unmounted {path}")
            except ExecutorError as e:
                report.error(f"umount {path}: {e}")
                failures += 1
        return failures
