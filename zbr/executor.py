"""Executor protocol and implementations (local, SSH)."""
from __future__ import annotations

import os
import shlex
import subprocess
from typing import Protocol, runtime_checkable


class ExecutorError(Exception):
    """Raised when a command exits with a non-zero status."""
    def __init__(self, cmd: list[str], returncode: int, stderr: str):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"Command {shlex.join(cmd)!r} exited {returncode}: {stderr.strip()}"
        )


@runtime_checkable
class Executor(Protocol):
    @property
    def label(self) -> str:
        """Short label for display (e.g. 'local', 'ssh://host')."""
        raise NotImplementedError

    def run(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> str:
        """Run a command, return stdout. Raise ExecutorError on failure.

        env entries are added to the inherited environment.
        """
        raise NotImplementedError


def _merged_env(env: dict[str, str] | None) -> dict[str, str] | None:
    if not env:
        return None
    merged = os.environ.copy()
    merged.update(env)
    return merged


class LocalExecutor:
    """Run commands on the local machine."""

    def __init__(self, verbose: bool = False):
        self.verbose = verbose

    @property
    def label(self) -> str:
        return "local"

    def run(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> str:
        if self.verbose:
            where = f" (in {cwd})" if cwd else ""
            print(f"  [run{where}] {shlex.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=False,
                env=_merged_env(env),
                cwd=cwd,
            )
        except OSError as e:
            raise ExecutorError(cmd, 127, str(e)) from e
        if result.returncode != 0:
            raise ExecutorError(cmd, result.returncode, result.stderr)
        return result.stdout


class SSHExecutor:
    """Run commands on a remote host via SSH."""

    def __init__(
        self,
        host: str,
        user: str | None = None,
        port: int = 22,
        verbose: bool = False,
    ):
        self.host = host
        self.user = user
        self.port = port
        self.verbose = verbose

    @property
    def label(self) -> str:
        dest = f"{self.user}@{self.host}" if self.user else self.host
        return f"ssh://{dest}:{self.port}"

    def _ssh_prefix(self) -> list[str]:
        dest = f"{self.user}@{self.host}" if self.user else self.host
        return [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(self.port),
            dest,
        ]

    def run(
        self,
        cmd: list[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> str:
        remote_cmd = shlex.join(cmd)
        if cwd:
            remote_cmd = f"cd {shlex.quote(cwd)} && {remote_cmd}"
        full_cmd = self._ssh_prefix() + [remote_cmd]
        if self.verbose:
            print(f"  [{self.label}] {remote_cmd}")
        result = subprocess.run(
            full_cmd,
            capture_output=True,
            text=True,
            check=False,
            env=_merged_env(env),
        )
        if result.returncode != 0:
            raise ExecutorError(full_cmd, result.returncode, result.stderr)
        return result.stdout
