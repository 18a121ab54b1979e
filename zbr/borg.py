"""borg archive operations and repository provisioning."""
from __future__ import annotations

import os
import posixpath
import shlex
from typing import TYPE_CHECKING

from zbr import report
from zbr.executor import ExecutorError

if TYPE_CHECKING:
    from zbr.executor import Executor
    from zbr.models import JobConfig, RemoteLocation, Retention

ENCRYPTION = "repokey-blake2"
EXCLUDE_MARKER = ".nobackup"

MISSING = "missing"
READY = "ready"
INCONSISTENT = "inconsistent"


class PreconditionError(Exception):
    """A dataset cannot be processed in its current state."""


class RepositoryError(PreconditionError):
    """A repository location exists but does not hold a borg repository."""


def borg_env(config: "JobConfig") -> dict[str, str]:
    env = {
        "BORG_PASSCOMMAND": f"cat {shlex.quote(config.passphrase_file)}",
        "BORG_RELOCATED_REPO_ACCESS_IS_OK": "no",
    }
    if config.cache_base:
        env["BORG_BASE_DIR"] = config.cache_base
    if config.remote_path:
        env["BORG_REMOTE_PATH"] = config.remote_path
    return env


class ArchiveTool:
    """Thin wrapper over the borg CLI for one job's settings."""

    def __init__(self, executor: "Executor", config: "JobConfig"):
        self.executor = executor
        self.compression = config.compression
        self.files_cache = config.files_cache
        self.env = borg_env(config)

    def _borg(self, args: list[str], cwd: str | None = None) -> str:
        return self.executor.run(["borg"] + args, env=self.env, cwd=cwd)

    def init(self, repo: str) -> None:
        self._borg(["init", f"--encryption={ENCRYPTION}", repo])

    def create(self, repo: str, archive: str, source_path: str) -> str:
        """Archive source_path's contents; paths are stored relative to it."""
        return self._borg(
            [
                "create",
                "--info", "--stats", "--show-rc",
                "--compression", self.compression,
                "--files-cache", self.files_cache,
                "--exclude-if-present", EXCLUDE_MARKER,
                f"{repo}::{archive}",
                ".",
            ],
            cwd=source_path,
        )

    def list(self, repo: str, glob: str | None = None) -> list[str]:
        args = ["list", "--short"]
        if glob:
            args += ["--glob-archives", glob]
        output = self._borg(args + [repo])
        return [line.strip() for line in output.splitlines() if line.strip()]

    def delete(self, repo: str, archive: str) -> None:
        self._borg(["delete", "--stats", f"{repo}::{archive}"])

    def prune(self, repo: str, retention: "Retention", glob: str | None = None) -> str:
        """Apply borg's calendar-bucket retention for all tiers at once."""
        args = [
            "prune", "--list", "--stats", "--show-rc",
            "--keep-daily", str(retention.day),
            "--keep-weekly", str(retention.week),
            "--keep-monthly", str(retention.month),
        ]
        if glob:
            args += ["--glob-archives", glob]
        return self._borg(args + [repo])


def local_repo_state(repo: str) -> str:
    try:
        if not os.path.exists(repo):
            return MISSING
        if os.path.isfile(os.path.join(repo, "config")):
            return READY
        if os.path.isdir(repo) and not os.listdir(repo):
            # borg init accepts an empty directory.
            return MISSING
    except OSError as e:
        raise RepositoryError(f"cannot inspect {repo}: {e}") from e
    return INCONSISTENT


def remote_repo_state(shell: "Executor", path: str) -> str:
    try:
        shell.run(["test", "-d", path])
    except ExecutorError:
        return MISSING
    try:
        shell.run(["test", "-f", posixpath.join(path, "config")])
    except ExecutorError:
        return INCONSISTENT
    return READY


def ensure_local_repo(tool: ArchiveTool, repo: str) -> bool:
    """Initialize the local repository if needed. Return True if created."""
    state = local_repo_state(repo)
    if state == READY:
        return False
    if state == INCONSISTENT:
        raise RepositoryError(f"{repo} exists but is not a borg repository")
    report.step(f"initializing repository {repo}")
    tool.init(repo)
    return True


def ensure_remote_repo(
    tool: ArchiveTool,
    shell: "Executor",
    remote: "RemoteLocation",
    repo: str,
    repo_name: str,
) -> bool:
    """Create the remote directory and repository if needed. Return True if created."""
    path = posixpath.join(remote.shell_path, repo_name)
    state = remote_repo_state(shell, path)
    if state == READY:
        return False
    if state == INCONSISTENT:
        raise RepositoryError(f"{repo} exists but is not a borg repository")
    report.step(f"initializing repository {repo}")
    shell.run(["mkdir", "-p", remote.shell_path])
    tool.init(repo)
    return True
