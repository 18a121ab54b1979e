"""Compaction: retire old snapshots and archives per retention counts.

Snapshots and archives are retained on different axes. Snapshots keep the N
newest labels of the tier that just ran. Archives are handed to borg prune
with the daily, weekly and monthly counts together, which keeps one archive
per calendar bucket across every archive in the repository.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

from zbr import report
from zbr.backup import StepFailed, destinations
from zbr.executor import ExecutorError
from zbr.models import Label

if TYPE_CHECKING:
    from zbr.borg import ArchiveTool
    from zbr.models import Dataset, JobConfig
    from zbr.zfs import SnapshotManager


def snapshots_to_prune(labels_newest_first: list[Label], keep: int) -> list[Label]:
    """Labels beyond the newest `keep`, oldest first."""
    if keep < 0:
        raise ValueError(f"keep must be >= 0, got {keep}")
    return list(reversed(labels_newest_first[keep:]))


def overlapping_globs(config: "JobConfig") -> list[tuple[str, str]]:
    """Dataset pairs sharing a repository whose prune globs would cross.

    In a mono repo `zdata_*` also matches every `zdata_data_*` archive, so
    pruning zdata would count (and delete) archives of zdata/data.
    """
    if not config.mono_repo:
        return []
    clashes = []
    for a in config.datasets:
        for b in config.datasets:
            if a.name == b.name:
                continue
            if b.normalized.startswith(a.normalized + "_") or (
                a.normalized == b.normalized and a.name < b.name
            ):
                clashes.append((a.name, b.name))
    return clashes


class PruneEngine:
    def __init__(
        self,
        config: "JobConfig",
        snapshots: "SnapshotManager",
        tool: "ArchiveTool",
    ):
        self.config = config
        self.snapshots = snapshots
        self.tool = tool

    def prune_snapshots(self, dataset: "Dataset", tier: str, keep: int | None = None) -> list[Label]:
        """Destroy all but the newest `keep` snapshots of one tier.

        Returns the destroyed labels. Other tiers are never touched.
        """
        if keep is None:
            keep = self.config.retention.keep_for(tier)
        history = self.snapshots.list_by_tier(dataset.name, tier)
        victims = snapshots_to_prune(history, keep)
        if not victims:
            report.step(f"{tier}: {len(history)} snapshot(s), keeping {keep}, nothing to prune")
            return []
        for label in victims:
            report.step(f"destroying {dataset.name}@{label}")
            self.snapshots.destroy(dataset.name, label, dataset.recursive)
        return victims

    def prune_archives(self, dataset: "Dataset") -> None:
        """Run borg prune on each destination.

        Every destination is attempted; failures are raised together
        afterwards as StepFailed.
        """
        glob = self.config.archive_glob(dataset)
        errors = []
        for kind, repo in destinations(self.config, dataset):
            where = f"{repo} ({glob})" if glob else repo
            report.step(f"[{kind}] borg prune {where}")
            try:
                self.tool.prune(repo, self.config.retention, glob)
            except ExecutorError as e:
                report.error(f"[{kind}] prune: {e}")
                errors.append((kind, e))
        if errors:
            raise StepFailed("prune", dataset.name, errors)
