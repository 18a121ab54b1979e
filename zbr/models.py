"""Data models for zfs-borg-rotate."""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlsplit

# Highest priority first.
TIERS = ("month", "week", "day")

SNAPSHOT_MODE = "snapshot"
PATH_MODE = "path"

STAMP_FORMAT = "%Y%m%d%H%M%S"
_LABEL_RE = re.compile(r"(month|week|day)-(\d{14})")


@dataclass(frozen=True, order=True)
class Label:
    """A tier-prefixed, timestamp-suffixed name: month-20240601120000.

    Ordering is by stamp first, so sorting labels sorts them in time.
    """
    stamp: str
    tier: str

    def __str__(self) -> str:
        return f"{self.tier}-{self.stamp}"

    @property
    def day(self) -> str:
        return self.stamp[:8]

    @classmethod
    def new(cls, tier: str, now: datetime) -> "Label":
        if tier not in TIERS:
            raise ValueError(f"Unknown tier: {tier!r}")
        return cls(stamp=now.strftime(STAMP_FORMAT), tier=tier)

    @classmethod
    def parse(cls, text: str) -> "Label":
        m = _LABEL_RE.fullmatch(text)
        if not m:
            raise ValueError(f"Not a tier label: {text!r}")
        return cls(stamp=m.group(2), tier=m.group(1))

    @classmethod
    def try_parse(cls, text: str) -> "Label | None":
        try:
            return cls.parse(text)
        except ValueError:
            return None


@dataclass(frozen=True, order=True)
class Snapshot:
    """A ZFS snapshot: pool/dataset@name."""
    dataset: str
    name: str  # just the snapshot name after '@'

    @property
    def full_name(self) -> str:
        return f"{self.dataset}@{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> "Snapshot":
        dataset, _, name = full_name.partition("@")
        if not name:
            raise ValueError(f"Not a snapshot: {full_name!r}")
        return cls(dataset=dataset, name=name)


@dataclass(frozen=True)
class Dataset:
    name: str  # e.g. zdata/data, or /srv/www in path mode
    mode: str = SNAPSHOT_MODE
    recursive: bool = False

    @property
    def normalized(self) -> str:
        return self.name.replace("/", "_")


@dataclass(frozen=True)
class TierChoice:
    tier: str
    label: Label
    forced: bool = False


@dataclass(frozen=True)
class RemoteLocation:
    """A borg ssh:// connection string split into its parts.

    borg accepts ssh://user@host:port/./relative and ssh://user@host/~/relative
    as well as absolute paths; `shell_path` is the form a remote shell expects.
    """
    url: str
    host: str
    user: str | None = None
    port: int = 22

    @property
    def path(self) -> str:
        return urlsplit(self.url).path

    @property
    def shell_path(self) -> str:
        path = self.path
        for prefix in ("/./", "/~/"):
            if path.startswith(prefix):
                return path[len(prefix):]
        return path

    @classmethod
    def parse(cls, url: str) -> "RemoteLocation":
        parts = urlsplit(url)
        if parts.scheme != "ssh" or not parts.hostname or not parts.path.strip("/"):
            raise ValueError(f"Remote must look like ssh://[user@]host[:port]/path: {url!r}")
        return cls(
            url=url.rstrip("/"),
            host=parts.hostname,
            user=parts.username,
            port=parts.port or 22,
        )


@dataclass(frozen=True)
class Retention:
    month: int
    week: int
    day: int

    def keep_for(self, tier: str) -> int:
        return getattr(self, tier)


@dataclass(frozen=True)
class JobConfig:
    datasets: tuple[Dataset, ...]
    local: str
    passphrase_file: str
    retention: Retention
    compression: str
    files_cache: str
    local_skip: bool = False
    local_perms: str | None = None
    remote: RemoteLocation | None = None
    pre_script: str | None = None
    post_script: str | None = None
    mono_repo: str | None = None
    cache_base: str | None = None
    remote_path: str | None = None
    mount_root: str = "/run/zbr"
    settle_seconds: float = 1.0

    def repo_name(self, dataset: Dataset) -> str:
        return self.mono_repo if self.mono_repo else dataset.normalized

    def local_repo(self, dataset: Dataset) -> str | None:
        if self.local_skip:
            return None
        return f"{self.local.rstrip('/')}/{self.repo_name(dataset)}"

    def remote_repo(self, dataset: Dataset) -> str | None:
        if self.remote is None:
            return None
        return f"{self.remote.url}/{self.repo_name(dataset)}"

    def archive_name(self, dataset: Dataset, label: Label | str) -> str:
        """Return the archive name for a label.

        Example: zdata/data, month-20240601120000
          multi-repo -> month-20240601120000
          mono-repo  -> zdata_data_month-20240601120000
        """
        if self.mono_repo:
            return f"{dataset.normalized}_{label}"
        return str(label)

    def archive_glob(self, dataset: Dataset) -> str | None:
        """Glob restricting archive pruning to one dataset, or None for all."""
        if self.mono_repo or dataset.mode == PATH_MODE:
            return self.archive_name(dataset, "*")
        return None
