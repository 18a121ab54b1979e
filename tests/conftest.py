"""MockExecutor, FakeHost and shared fixtures for testing."""
from __future__ import annotations

import fnmatch
import os
import posixpath
import shlex

import pytest

from zbr.executor import ExecutorError
from zbr.models import (
    SNAPSHOT_MODE,
    Dataset,
    JobConfig,
    RemoteLocation,
    Retention,
)


class MockExecutor:
    """
    Executor that returns pre-scripted responses for commands.

    responses: dict mapping tuple(cmd) -> stdout string (or an Exception to raise)
    If the command isn't found, raises KeyError (to catch unexpected calls in tests).
    """

    def __init__(self, responses: dict | None = None, is_verbose: bool = False, label: str = "mock"):
        self.responses: dict = responses or {}
        self.verbose = is_verbose
        self._label = label
        self.calls: list[list[str]] = []  # record of all commands run
        self.envs: list[dict | None] = []
        self.cwds: list[str | None] = []

    @property
    def label(self) -> str:
        return self._label

    def run(self, cmd: list[str], env: dict | None = None, cwd: str | None = None) -> str:
        self.calls.append(cmd)
        self.envs.append(env)
        self.cwds.append(cwd)
        if self.verbose:
            print(f"  [mock.run] {shlex.join(cmd)}")
        key = tuple(cmd)
        if key not in self.responses:
            raise KeyError(f"MockExecutor: unexpected command: {cmd}")
        result = self.responses[key]
        if isinstance(result, Exception):
            raise result
        return result


class FakeShell:
    """Remote shell over a set of existing paths (test / mkdir only)."""

    def __init__(self):
        self.paths: set[str] = set()
        self.calls: list[list[str]] = []

    @property
    def label(self) -> str:
        return "ssh://fake"

    def run(self, cmd: list[str], env: dict | None = None, cwd: str | None = None) -> str:
        self.calls.append(cmd)
        if cmd[:2] in (["test", "-d"], ["test", "-f"]):
            if cmd[2] in self.paths:
                return ""
            raise ExecutorError(cmd, 1, "")
        if cmd[:2] == ["mkdir", "-p"]:
            path = cmd[2]
            while path and path not in (".", "/"):
                self.paths.add(path)
                path = posixpath.dirname(path)
            return ""
        raise KeyError(f"FakeShell: unexpected command: {cmd}")


class FakeHost:
    """
    Stateful stand-in for a host with zfs, mount, findmnt and borg.

    Snapshots are kept in creation order. Local borg repositories are real
    directories (with a `config` file) so repository detection sees them;
    remote ones are registered with the attached FakeShell.

    fail_on: list of command prefixes (tuples) that raise ExecutorError.
    """

    def __init__(self, datasets: list[str] | None = None, shell: FakeShell | None = None):
        self.datasets: list[str] = list(datasets or [])
        self.snapshots: list[str] = []
        self.mounts: list[str] = []
        self.repos: dict[str, list[str]] = {}
        self.shell = shell
        self.fail_on: list[tuple] = []
        self.calls: list[list[str]] = []
        self.cwds: list[str | None] = []
        self.envs: list[dict | None] = []
        self.prunes: list[list[str]] = []
        self.chmods: list[list[str]] = []
        self.hooks: list[list[str]] = []
        self.mount_log: list[tuple[str, str]] = []

    @property
    def label(self) -> str:
        return "fake"

    # --- helpers for tests ---

    def add_snapshot(self, full_name: str) -> None:
        self.snapshots.append(full_name)

    def snapshots_of(self, dataset: str, prefix: str = "") -> list[str]:
        return [
            s.split("@", 1)[1] for s in self.snapshots
            if s.split("@", 1)[0] == dataset and s.split("@", 1)[1].startswith(prefix)
        ]

    def add_archive(self, repo: str, archive: str) -> None:
        self._init_repo(repo)
        self.repos[repo].append(archive)

    # --- executor ---

    def run(self, cmd: list[str], env: dict | None = None, cwd: str | None = None) -> str:
        self.calls.append(cmd)
        self.cwds.append(cwd)
        self.envs.append(env)
        for prefix in self.fail_on:
            if tuple(cmd[:len(prefix)]) == prefix:
                raise ExecutorError(cmd, 2, "injected failure")

        if cmd[0] == "zfs":
            return self._zfs(cmd)
        if cmd[0] == "borg":
            return self._borg(cmd, cwd)
        if cmd[:2] == ["mkdir", "-p"]:
            return ""
        if cmd[0] == "mount":
            snap, path = cmd[-2], cmd[-1]
            self.mounts.append(path)
            self.mount_log.append(("mount", snap))
            return ""
        if cmd[0] == "umount":
            path = cmd[1]
            if path not in self.mounts:
                raise ExecutorError(cmd, 32, f"umount: {path}: not mounted")
            self.mounts.remove(path)
            self.mount_log.append(("umount", path))
            return ""
        if cmd[0] == "findmnt":
            return "\n".join(["/", "/boot"] + self.mounts) + "\n"
        if cmd[0] == "chmod":
            self.chmods.append(cmd)
            return ""
        if cmd[0].endswith(".sh"):
            self.hooks.append(cmd)
            return ""
        raise KeyError(f"FakeHost: unexpected command: {cmd}")

    def _zfs(self, cmd: list[str]) -> str:
        if cmd[:2] == ["zfs", "list"]:
            target = cmd[-1]
            if "-r" in cmd:
                matching = [
                    s for s in self.snapshots
                    if s.split("@")[0] == target or s.split("@")[0].startswith(target + "/")
                ]
                return "".join(s + "\n" for s in matching)
            if target in self.snapshots:
                return target + "\n"
            raise ExecutorError(cmd, 1, f"cannot open '{target}': dataset does not exist")
        if cmd[:2] == ["zfs", "snapshot"]:
            recursive = "-r" in cmd
            dataset, _, name = cmd[-1].partition("@")
            if cmd[-1] in self.snapshots:
                raise ExecutorError(cmd, 1, f"cannot create snapshot '{cmd[-1]}': dataset already exists")
            targets = [dataset] + [
                d for d in self.datasets if recursive and d.startswith(dataset + "/")
            ]
            for d in targets:
                self.snapshots.append(f"{d}@{name}")
            return ""
        if cmd[:2] == ["zfs", "destroy"]:
            recursive = "-r" in cmd
            dataset, _, name = cmd[-1].partition("@")
            self.snapshots = [
                s for s in self.snapshots
                if not (
                    s.split("@")[1] == name
                    and (s.split("@")[0] == dataset
                         or (recursive and s.split("@")[0].startswith(dataset + "/")))
                )
            ]
            return ""
        raise KeyError(f"FakeHost: unexpected zfs command: {cmd}")

    def _init_repo(self, repo: str) -> None:
        if repo in self.repos:
            return
        self.repos[repo] = []
        if repo.startswith("ssh://"):
            path = RemoteLocation.parse(repo).shell_path
            if self.shell is not None:
                self.shell.paths.update({path, posixpath.join(path, "config")})
        else:
            os.makedirs(repo, exist_ok=True)
            with open(os.path.join(repo, "config"), "w") as f:
                f.write("[repository]\n")

    def _borg(self, cmd: list[str], cwd: str | None) -> str:
        sub = cmd[1]
        if sub == "init":
            self._init_repo(cmd[-1])
            return ""
        if sub == "create":
            repo, _, archive = cmd[-2].partition("::")
            if archive in self.repos[repo]:
                raise ExecutorError(cmd, 2, f"Archive {archive} already exists")
            self.repos[repo].append(archive)
            return "------\nArchive name: " + archive + "\n"
        if sub == "list":
            repo = cmd[-1]
            if repo not in self.repos:
                raise ExecutorError(cmd, 2, f"Repository {repo} does not exist.")
            names = self.repos[repo]
            if "--glob-archives" in cmd:
                glob = cmd[cmd.index("--glob-archives") + 1]
                names = [n for n in names if fnmatch.fnmatchcase(n, glob)]
            return "".join(n + "\n" for n in names)
        if sub == "delete":
            repo, _, archive = cmd[-1].partition("::")
            if archive not in self.repos.get(repo, []):
                raise ExecutorError(cmd, 1, f"Archive {archive} does not exist")
            self.repos[repo].remove(archive)
            return ""
        if sub == "prune":
            self.prunes.append(cmd)
            return ""
        raise KeyError(f"FakeHost: unexpected borg command: {cmd}")


def make_config(tmp_path, **overrides) -> JobConfig:
    """A JobConfig for one snapshot-mode dataset with a local repo under tmp_path."""
    local = tmp_path / "borg"
    local.mkdir(exist_ok=True)
    values = dict(
        datasets=(Dataset("pool/data", SNAPSHOT_MODE, recursive=False),),
        local=str(local),
        passphrase_file=str(tmp_path / "passphrase"),
        retention=Retention(month=6, week=4, day=7),
        compression="auto,zstd",
        files_cache="ctime,size,inode",
        mount_root="/run/zbr",
        settle_seconds=0,
    )
    values.update(overrides)
    return JobConfig(**values)


@pytest.fixture
def verbose(request):
    """True if -v was passed to pytest."""
    return request.config.getoption("--verbose", default=False)
