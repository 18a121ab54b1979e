"""Create archives of a mounted dataset in the local and remote repositories."""
from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from zbr import report
from zbr.borg import (
    READY,
    RepositoryError,
    ensure_local_repo,
    ensure_remote_repo,
    local_repo_state,
    remote_repo_state,
)
from zbr.executor import ExecutorError

if TYPE_CHECKING:
    from zbr.borg import ArchiveTool
    from zbr.executor import Executor
    from zbr.models import Dataset, JobConfig, Label

LOCAL_PERMS = {
    "open": "go+rX",
    "restrict": "go-rwx",
}


class StepFailed(Exception):
    """One or more destinations failed a step; the others were still attempted."""
    def __init__(self, step: str, dataset: str, errors: list[tuple[str, Exception]]):
        self.step = step
        self.dataset = dataset
        self.errors = errors
        detail = "; ".join(f"{where}: {err}" for where, err in errors)
        super().__init__(f"{step} failed for {dataset}: {detail}")


@dataclass
class BackupResult:
    archive: str
    done: list[str] = field(default_factory=list)  # "local" / "remote"
    errors: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def destinations(config: "JobConfig", dataset: "Dataset") -> list[tuple[str, str]]:
    """(kind, repository) for each configured, non-skipped destination."""
    found = []
    local = config.local_repo(dataset)
    if local:
        found.append(("local", local))
    remote = config.remote_repo(dataset)
    if remote:
        found.append(("remote", remote))
    return found


class BackupExecutor:
    def __init__(
        self,
        config: "JobConfig",
        tool: "ArchiveTool",
        local_executor: "Executor",
        remote_shell: "Executor | None" = None,
    ):
        self.config = config
        self.tool = tool
        self.local_executor = local_executor
        self.remote_shell = remote_shell

    def ensure_repository(self, kind: str, repo: str, dataset: "Dataset") -> None:
        if kind == "local":
            ensure_local_repo(self.tool, repo)
        else:
            if self.remote_shell is None:
                raise RepositoryError(f"No remote shell configured for {repo}")
            ensure_remote_repo(
                self.tool,
                self.remote_shell,
                self.config.remote,
                repo,
                self.config.repo_name(dataset),
            )

    def repository_ready(self, kind: str, repo: str, dataset: "Dataset") -> bool:
        """True if the destination already holds an initialized repository."""
        if kind == "local":
            return local_repo_state(repo) == READY
        if self.remote_shell is None:
            return False
        path = posixpath.join(self.config.remote.shell_path, self.config.repo_name(dataset))
        return remote_repo_state(self.remote_shell, path) == READY

    def _adjust_local_perms(self, repo: str) -> None:
        mode = LOCAL_PERMS.get(self.config.local_perms or "")
        if mode:
            self.local_executor.run(["chmod", "-R", mode, repo])

    def run_backup(
        self,
        dataset: "Dataset",
        source_path: str,
        label: "Label | str",
    ) -> BackupResult:
        """Archive source_path to every destination, local first.

        A failure on one destination does not stop the other. The caller
        decides what a non-ok result means.
        """
        result = BackupResult(archive=self.config.archive_name(dataset, label))
        targets = destinations(self.config, dataset)
        if not targets:
            err = RepositoryError(f"no destination configured for {dataset.name}")
            report.error(str(err))
            result.errors.append(("destinations", err))
            return result
        for kind, repo in targets:
            report.step(f"[{kind}] borg create {repo}::{result.archive}")
            try:
                self.ensure_repository(kind, repo, dataset)
                self.tool.create(repo, result.archive, source_path)
                if kind == "local":
                    self._adjust_local_perms(repo)
            except (ExecutorError, RepositoryError) as e:
                report.error(f"[{kind}] {e}")
                result.errors.append((kind, e))
                continue
            result.done.append(kind)
            report.ok(f"[{kind}] archive {result.archive} created")
        return result
