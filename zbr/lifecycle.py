"""Per-dataset backup lifecycle: snapshot, mount, archive, unmount, prune."""
from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from zbr import report
from zbr.backup import BackupExecutor, StepFailed, destinations
from zbr.borg import ArchiveTool, PreconditionError
from zbr.compact import PruneEngine
from zbr.executor import ExecutorError
from zbr.models import PATH_MODE, SNAPSHOT_MODE, Label
from zbr.mount import MountError, MountTree
from zbr.schedule import RetentionScheduler
from zbr.zfs import SnapshotManager

if TYPE_CHECKING:
    from zbr.executor import Executor
    from zbr.models import Dataset, JobConfig

STEP_ERRORS = (ExecutorError, MountError, PreconditionError, StepFailed)


class HookError(Exception):
    """A pre/post hook script exited non-zero."""


class ErrorPolicy:
    """How a job reacts to a failed step.

    fail_fast re-raises the first failure. best_effort reports it, counts it
    and lets the job carry on with the next step.
    """

    def __init__(self, name: str, keep_going: bool):
        self.name = name
        self.keep_going = keep_going
        self.failures = 0

    @classmethod
    def fail_fast(cls) -> "ErrorPolicy":
        return cls("fail-fast", keep_going=False)

    @classmethod
    def best_effort(cls) -> "ErrorPolicy":
        return cls("best-effort", keep_going=True)

    @contextmanager
    def guard(self, what: str):
        try:
            yield
        except STEP_ERRORS + (HookError,) as e:
            if not self.keep_going:
                raise
            self.failures += 1
            report.error(f"{what}: {e} ({self.name}, continuing)")


@dataclass
class Toolkit:
    """Every component a job needs, built once from one JobConfig."""
    config: "JobConfig"
    executor: "Executor"
    snapshots: SnapshotManager
    mounts: MountTree
    tool: ArchiveTool
    backup: BackupExecutor
    prune: PruneEngine
    scheduler: RetentionScheduler


def build_toolkit(
    config: "JobConfig",
    executor: "Executor",
    remote_shell: "Executor | None" = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Toolkit:
    snapshots = SnapshotManager(executor, config.settle_seconds, sleep=sleep)
    tool = ArchiveTool(executor, config)
    backup = BackupExecutor(config, tool, executor, remote_shell)
    kit = Toolkit(
        config=config,
        executor=executor,
        snapshots=snapshots,
        mounts=MountTree(executor, snapshots, config.mount_root),
        tool=tool,
        backup=backup,
        prune=PruneEngine(config, snapshots, tool),
        scheduler=RetentionScheduler(lambda ds: tier_history(kit, ds)),
    )
    return kit


def check_mode(dataset: "Dataset") -> None:
    if dataset.mode not in (SNAPSHOT_MODE, PATH_MODE):
        raise PreconditionError(
            f"{dataset.name}: unknown backup mode {dataset.mode!r} "
            f"(expected {SNAPSHOT_MODE!r} or {PATH_MODE!r})"
        )


def archive_labels(kit: Toolkit, dataset: "Dataset") -> list[Label]:
    """Tier labels recovered from archive names in the first ready destination."""
    prefix = kit.config.archive_name(dataset, "")
    for kind, repo in destinations(kit.config, dataset):
        if not kit.backup.repository_ready(kind, repo, dataset):
            continue
        names = kit.tool.list(repo, glob=kit.config.archive_glob(dataset))
        labels = []
        for name in names:
            if name.startswith(prefix):
                label = Label.try_parse(name[len(prefix):])
                if label is not None:
                    labels.append(label)
        return sorted(labels)
    return []


def tier_history(kit: Toolkit, dataset: "Dataset") -> list[Label]:
    """Plain paths have no snapshots, so their history lives in archive names."""
    if dataset.mode == PATH_MODE:
        return archive_labels(kit, dataset)
    return kit.snapshots.labels(dataset.name)


def run_hook(kit: Toolkit, script: str | None, dataset: "Dataset", tier: str, label) -> None:
    if not script:
        return
    report.step(f"hook {script}")
    try:
        kit.executor.run([script, dataset.name, tier, str(label)])
    except ExecutorError as e:
        raise HookError(f"{script} failed for {dataset.name}: {e}") from e


def _archive(kit: Toolkit, dataset: "Dataset", source: str, label) -> None:
    result = kit.backup.run_backup(dataset, source, label)
    if not result.ok:
        # Mounts and the snapshot stay in place for `tidy`.
        raise StepFailed("backup", dataset.name, result.errors)


def run_dataset(kit: Toolkit, dataset: "Dataset", now: datetime) -> Label:
    """Run today's tier for one dataset. Return the label used."""
    check_mode(dataset)
    today = now.strftime("%Y%m%d")
    earlier = kit.scheduler.labels_on(dataset, today)
    if earlier:
        # One run per dataset per day; a rerun must follow `tidy`.
        raise PreconditionError(
            f"{dataset.name} already has {', '.join(map(str, earlier))} from today; "
            f"run 'zbr tidy' before retrying"
        )
    choice = kit.scheduler.select(dataset, now)
    forced = ""
    if choice.forced:
        forced = f" ({report.YELLOW}forced: no {choice.tier} history{report.RESET})"
    report.step(f"tier: {choice.tier}{forced}, label: {choice.label}")

    run_hook(kit, kit.config.pre_script, dataset, choice.tier, choice.label)

    handle = None
    if dataset.mode == SNAPSHOT_MODE:
        report.step(f"snapshot {dataset.name}@{choice.label}")
        kit.snapshots.create(dataset.name, choice.label, dataset.recursive)
        handle = kit.mounts.mount(dataset.name, choice.label, dataset.recursive)
        source = handle.root_path
        report.step(f"mounted {len(handle.mounted)} dataset(s) at {source}")
    else:
        source = dataset.name

    _archive(kit, dataset, source, choice.label)

    if handle is not None:
        kit.mounts.unmount(handle)
        kit.prune.prune_snapshots(dataset, choice.tier)
    kit.prune.prune_archives(dataset)

    run_hook(kit, kit.config.post_script, dataset, choice.tier, choice.label)
    return choice.label


def snap_dataset(kit: Toolkit, dataset: "Dataset", label: str) -> None:
    """Archive an existing snapshot named label (or the plain path)."""
    check_mode(dataset)
    run_hook(kit, kit.config.pre_script, dataset, "snap", label)
    handle = None
    if dataset.mode == SNAPSHOT_MODE:
        handle = kit.mounts.mount(dataset.name, label, dataset.recursive)
        source = handle.root_path
    else:
        source = dataset.name

    _archive(kit, dataset, source, label)

    if handle is not None:
        kit.mounts.unmount(handle)
    run_hook(kit, kit.config.post_script, dataset, "snap", label)


def run_job(kit: Toolkit, now: datetime, policy: ErrorPolicy | None = None) -> int:
    """Run the full lifecycle over every dataset, in configured order.

    Returns exit code (0=success, 1=failure).
    """
    policy = policy or ErrorPolicy.fail_fast()
    for dataset in kit.config.datasets:
        report.banner(f"Dataset: {dataset.name}")
        with policy.guard(dataset.name):
            label = run_dataset(kit, dataset, now)
            report.ok(f"{dataset.name}: {label} done")
    return 1 if policy.failures else 0


def snap_job(kit: Toolkit, label: str, policy: ErrorPolicy | None = None) -> int:
    policy = policy or ErrorPolicy.fail_fast()
    for dataset in kit.config.datasets:
        report.banner(f"Dataset: {dataset.name} (snapshot {label})")
        with policy.guard(dataset.name):
            snap_dataset(kit, dataset, label)
            report.ok(f"{dataset.name}: {kit.config.archive_name(dataset, label)} done")
    return 1 if policy.failures else 0
