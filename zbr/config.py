"""Load and validate YAML job configuration files."""
from __future__ import annotations

import os

import yaml

from zbr.compact import overlapping_globs
from zbr.models import Dataset, JobConfig, RemoteLocation, Retention

REQUIRED = (
    "datasets",
    "mode",
    "recursive",
    "local",
    "passphrase_file",
    "month_keep",
    "week_keep",
    "day_keep",
    "compression",
    "files_cache",
)

LOCAL_PERMS = ("open", "restrict")


class ConfigError(Exception):
    pass


def _bool(raw: dict, key: str, default: bool = False) -> bool:
    value = raw.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    return value


def _keep(raw: dict, key: str) -> int:
    try:
        keep = int(raw[key])
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {raw[key]!r}")
    if keep < 0:
        raise ConfigError(f"'{key}' must be >= 0, got {keep}")
    return keep


def _optional_str(raw: dict, key: str) -> str | None:
    value = raw.get(key)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def _hook(raw: dict, key: str) -> str | None:
    path = _optional_str(raw, key)
    if path is not None and not (os.path.isfile(path) and os.access(path, os.X_OK)):
        raise ConfigError(f"'{key}' is not an executable file: {path}")
    return path


def load_job(path: str) -> JobConfig:
    with open(path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict):
        raise ConfigError(f"Config must be a YAML mapping: {path}")

    missing = [key for key in REQUIRED if raw.get(key) is None]
    if missing:
        raise ConfigError(f"Missing required setting(s): {', '.join(missing)}")

    # --- datasets ---
    mode = str(raw["mode"]).strip()
    recursive = _bool(raw, "recursive")
    datasets_raw = raw["datasets"]
    if not isinstance(datasets_raw, list) or not datasets_raw:
        raise ConfigError("'datasets' list is required")
    datasets = []
    for d in datasets_raw:
        name = str(d).strip() if d is not None else ""
        if not name or name == "None":
            raise ConfigError(f"Invalid dataset entry: {d!r}")
        datasets.append(Dataset(name=name, mode=mode, recursive=recursive))

    # --- destinations ---
    local_skip = _bool(raw, "local_skip")
    local = str(raw["local"]).strip()
    if not local_skip and not os.path.isdir(local):
        raise ConfigError(f"Local output directory does not exist: {local}")
    local_perms = _optional_str(raw, "local_perms")
    if local_perms is not None and local_perms not in LOCAL_PERMS:
        raise ConfigError(f"'local_perms' must be one of {', '.join(LOCAL_PERMS)}")

    remote = None
    remote_raw = _optional_str(raw, "remote")
    if remote_raw is not None:
        try:
            remote = RemoteLocation.parse(remote_raw)
        except ValueError as e:
            raise ConfigError(str(e))
    if local_skip and remote is None:
        raise ConfigError("no destination configured: local_skip is set and there is no remote")

    passphrase_file = str(raw["passphrase_file"]).strip()
    if not (os.path.isfile(passphrase_file) and os.access(passphrase_file, os.R_OK)):
        raise ConfigError(f"Passphrase file is missing or unreadable: {passphrase_file}")

    # --- retention ---
    retention = Retention(
        month=_keep(raw, "month_keep"),
        week=_keep(raw, "week_keep"),
        day=_keep(raw, "day_keep"),
    )
    if not (retention.month or retention.week or retention.day):
        raise ConfigError("at least one of month_keep, week_keep, day_keep must be > 0")

    try:
        settle_seconds = float(raw.get("settle_seconds", 1.0))
    except (TypeError, ValueError):
        raise ConfigError(f"'settle_seconds' must be a number, got {raw['settle_seconds']!r}")

    config = JobConfig(
        datasets=tuple(datasets),
        local=local,
        passphrase_file=passphrase_file,
        retention=retention,
        compression=str(raw["compression"]).strip(),
        files_cache=str(raw["files_cache"]).strip(),
        local_skip=local_skip,
        local_perms=local_perms,
        remote=remote,
        pre_script=_hook(raw, "pre_script"),
        post_script=_hook(raw, "post_script"),
        mono_repo=_optional_str(raw, "mono_repo"),
        cache_base=_optional_str(raw, "cache_base"),
        remote_path=_optional_str(raw, "remote_path"),
        mount_root=_optional_str(raw, "mount_root") or "/run/zbr",
        settle_seconds=settle_seconds,
    )

    clashes = overlapping_globs(config)
    if clashes:
        a, b = clashes[0]
        raise ConfigError(
            f"datasets {a} and {b} cannot share mono_repo {config.mono_repo}: "
            f"archive names of {b} match the prune glob of {a}"
        )
    return config
