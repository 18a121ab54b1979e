"""ZFS snapshot operations using an Executor for dependency injection."""
from __future__ import annotations

import time
from typing import TYPE_CHECKING, Callable

from zbr.executor import ExecutorError
from zbr.models import Label, Snapshot

if TYPE_CHECKING:
    from zbr.executor import Executor


def list_snapshots(dataset: str, executor: "Executor", recursive: bool = False) -> list[Snapshot]:
    """Return snapshots for a dataset, oldest first.

    Without recursive, snapshots of child datasets are filtered out.
    """
    output = executor.run([
        "zfs", "list", "-H", "-o", "name", "-t", "snapshot", "-r", dataset,
    ])
    results = []
    for line in output.splitlines():
        name = line.strip()
        if not name or "@" not in name:
            continue
        snap = Snapshot.parse(name)
        if snap.dataset == dataset or (
            recursive and snap.dataset.startswith(dataset + "/")
        ):
            results.append(snap)
    return results


def snapshot_exists(snapshot: Snapshot, executor: "Executor") -> bool:
    try:
        executor.run(["zfs", "list", "-H", "-o", "name", "-t", "snapshot", snapshot.full_name])
        return True
    except ExecutorError:
        return False


class SnapshotManager:
    """Create, destroy and enumerate tier-labelled snapshots of a dataset.

    zfs takes a recursive snapshot atomically, so a dataset and all of its
    descendants always share the label. Snapshots are not immediately usable
    after create/destroy; every mutation is followed by a settle delay.
    """

    def __init__(
        self,
        executor: "Executor",
        settle_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.settle_seconds = settle_seconds
        self._sleep = sleep

    def _settle(self) -> None:
        if self.settle_seconds > 0:
            self._sleep(self.settle_seconds)

    def create(self, dataset: str, label: Label | str, recursive: bool) -> Snapshot:
        snap = Snapshot(dataset=dataset, name=str(label))
        cmd = ["zfs", "snapshot"]
        if recursive:
            cmd.append("-r")
        cmd.append(snap.full_name)
        self.executor.run(cmd)
        self._settle()
        return snap

    def destroy(self, dataset: str, label: Label | str, recursive: bool) -> bool:
        """Destroy a snapshot (and its descendants). Return False if it was absent."""
        snap = Snapshot(dataset=dataset, name=str(label))
        if not snapshot_exists(snap, self.executor):
            return False
        cmd = ["zfs", "destroy"]
        if recursive:
            cmd.append("-r")
        cmd.append(snap.full_name)
        self.executor.run(cmd)
        self._settle()
        return True

    def labels(self, dataset: str) -> list[Label]:
        """All tier labels on the dataset itself, oldest first."""
        found = []
        for snap in list_snapshots(dataset, self.executor):
            label = Label.try_parse(snap.name)
            if label is not None:
                found.append(label)
        return sorted(found)

    def list_by_tier(self, dataset: str, tier: str) -> list[Label]:
        """Labels of one tier, newest first."""
        return sorted(
            (label for label in self.labels(dataset) if label.tier == tier),
            reverse=True,
        )

    def datasets_with_snapshot(
        self, dataset: str, label: Label | str, recursive: bool
    ) -> list[str]:
        """Return the dataset and, if recursive, each descendant carrying @label."""
        name = str(label)
        return [
            snap.dataset
            for snap in list_snapshots(dataset, self.executor, recursive=recursive)
            if snap.name == name
        ]
