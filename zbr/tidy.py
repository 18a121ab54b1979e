"""Undo today's partial run so that `run` can be retried."""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from zbr import report
from zbr.backup import destinations
from zbr.lifecycle import ErrorPolicy, check_mode
from zbr.models import SNAPSHOT_MODE

if TYPE_CHECKING:
    from zbr.lifecycle import Toolkit
    from zbr.models import Dataset


def tidy_dataset(kit: "Toolkit", dataset: "Dataset", now: datetime, policy: ErrorPolicy) -> None:
    check_mode(dataset)
    today = now.strftime("%Y%m%d")
    # Hide today's labels so the tier matches what run chose this morning.
    choice = kit.scheduler.select(dataset, now, exclude_day=today)
    prefix = f"{choice.tier}-{today}"
    report.step(f"today's tier: {choice.tier} ({prefix}*)")

    if dataset.mode == SNAPSHOT_MODE:
        for label in kit.snapshots.list_by_tier(dataset.name, choice.tier):
            if label.day != today:
                continue
            with policy.guard(f"destroy {dataset.name}@{label}"):
                kit.snapshots.destroy(dataset.name, label, dataset.recursive)
                report.step(f"destroyed {dataset.name}@{label}")

    pattern = kit.config.archive_name(dataset, prefix + "*")
    for kind, repo in destinations(kit.config, dataset):
        with policy.guard(f"[{kind}] {repo}"):
            if not kit.backup.repository_ready(kind, repo, dataset):
                continue
            for archive in kit.tool.list(repo, glob=pattern):
                kit.tool.delete(repo, archive)
                report.step(f"[{kind}] deleted {repo}::{archive}")


def tidy(kit: "Toolkit", now: datetime) -> int:
    """Best-effort removal of today's mounts, snapshots and archives.

    Returns exit code (0=everything cleaned, 1=something could not be).
    """
    policy = ErrorPolicy.best_effort()

    report.banner(f"Unmounting everything below {kit.mounts.mount_root}")
    with policy.guard("unmount"):
        policy.failures += kit.mounts.unmount_all()

    for dataset in kit.config.datasets:
        report.banner(f"Tidy: {dataset.name}")
        with policy.guard(dataset.name):
            tidy_dataset(kit, dataset, now, policy)

    return 1 if policy.failures else 0
