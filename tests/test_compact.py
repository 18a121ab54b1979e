"""Tests for zbr.compact module."""
from __future__ import annotations

import pytest

from zbr.backup import StepFailed
from zbr.borg import ArchiveTool
from zbr.compact import PruneEngine, overlapping_globs, snapshots_to_prune
from zbr.models import PATH_MODE, Dataset, Label, RemoteLocation
from zbr.zfs import SnapshotManager
from tests.conftest import FakeHost, FakeShell, make_config

DS = Dataset("pool/data")
REMOTE = "ssh://backup@nas/./borg"


def _labels(*names):
    return [Label.parse(n) for n in names]


def _engine(config, host):
    return PruneEngine(config, SnapshotManager(host, settle_seconds=0), ArchiveTool(host, config))


# ---------------------------------------------------------------------------
# Unit tests for snapshots_to_prune
# ---------------------------------------------------------------------------

def test_keep_n_deletes_oldest_first():
    newest_first = _labels(
        "day-20240605020000",
        "day-20240604020000",
        "day-20240603020000",
        "day-20240602020000",
    )
    victims = snapshots_to_prune(newest_first, keep=2)
    assert [str(v) for v in victims] == ["day-20240602020000", "day-20240603020000"]


def test_keep_more_than_count_deletes_nothing():
    assert snapshots_to_prune(_labels("month-20240601020000"), keep=24) == []


def test_keep_zero_deletes_all():
    labels = _labels("week-20240609020000", "week-20240602020000")
    assert len(snapshots_to_prune(labels, keep=0)) == 2


def test_negative_keep_rejected():
    with pytest.raises(ValueError):
        snapshots_to_prune([], keep=-1)


# ---------------------------------------------------------------------------
# PruneEngine
# ---------------------------------------------------------------------------

def test_prune_snapshots_leaves_newest_and_other_tiers(tmp_path):
    host = FakeHost(["pool/data"])
    for name in [
        "month-20240601020000",
        "day-20240602020000",
        "week-20240602030000",
        "day-20240603020000",
        "day-20240604020000",
        "zfs-auto-snap_daily-2024-06-04-0200",
    ]:
        host.add_snapshot(f"pool/data@{name}")
    config = make_config(tmp_path)
    victims = _engine(config, host).prune_snapshots(DS, "day", keep=1)
    assert [str(v) for v in victims] == ["day-20240602020000", "day-20240603020000"]
    assert host.snapshots_of("pool/data", "day-") == ["day-20240604020000"]
    assert host.snapshots_of("pool/data", "month-") == ["month-20240601020000"]
    assert host.snapshots_of("pool/data", "week-") == ["week-20240602030000"]
    assert host.snapshots_of("pool/data", "zfs-auto") == ["zfs-auto-snap_daily-2024-06-04-0200"]


def test_prune_snapshots_uses_configured_keep(tmp_path):
    host = FakeHost(["pool/data"])
    for day in range(1, 6):
        host.add_snapshot(f"pool/data@week-2024060{day}020000")
    config = make_config(tmp_path)  # week keep 4
    _engine(config, host).prune_snapshots(DS, "week")
    assert len(host.snapshots_of("pool/data", "week-")) == 4


def test_prune_snapshots_recursive_destroy(tmp_path):
    host = FakeHost(["pool/data", "pool/data/a"])
    for stamp in ("20240602020000", "20240603020000"):
        host.add_snapshot(f"pool/data@day-{stamp}")
        host.add_snapshot(f"pool/data/a@day-{stamp}")
    ds = Dataset("pool/data", recursive=True)
    _engine(make_config(tmp_path), host).prune_snapshots(ds, "day", keep=1)
    assert ["zfs", "destroy", "-r", "pool/data@day-20240602020000"] in host.calls
    assert host.snapshots_of("pool/data/a") == ["day-20240603020000"]


def test_prune_archives_passes_all_tier_counts(tmp_path):
    host = FakeHost()
    config = make_config(tmp_path)
    _engine(config, host).prune_archives(DS)
    assert host.prunes == [[
        "borg", "prune", "--list", "--stats", "--show-rc",
        "--keep-daily", "7",
        "--keep-weekly", "4",
        "--keep-monthly", "6",
        f"{tmp_path}/borg/pool_data",
    ]]


def test_prune_archives_globs_per_dataset_in_path_mode(tmp_path):
    host = FakeHost()
    config = make_config(tmp_path, mono_repo="shared")
    _engine(config, host).prune_archives(Dataset("/srv/www", mode=PATH_MODE))
    cmd = host.prunes[0]
    assert cmd[cmd.index("--glob-archives") + 1] == "_srv_www_*"
    assert cmd[-1] == f"{tmp_path}/borg/shared"


def test_prune_archives_failure_still_tries_remote(tmp_path):
    host = FakeHost(shell=FakeShell())
    config = make_config(tmp_path, remote=RemoteLocation.parse(REMOTE))
    host.fail_on.append(("borg", "prune"))
    with pytest.raises(StepFailed) as info:
        _engine(config, host).prune_archives(DS)
    assert [kind for kind, _ in info.value.errors] == ["local", "remote"]
    assert len([c for c in host.calls if c[:2] == ["borg", "prune"]]) == 2


# ---------------------------------------------------------------------------
# Prune glob isolation in a shared repository
# ---------------------------------------------------------------------------

def test_mono_repo_prune_glob_matches_nested_dataset(tmp_path):
    host = FakeHost()
    config = make_config(
        tmp_path,
        datasets=(Dataset("zdata"), Dataset("zdata/data")),
        mono_repo="shared",
    )
    repo = f"{tmp_path}/borg/shared"
    host.add_archive(repo, "zdata_month-20240601020000")
    host.add_archive(repo, "zdata_data_month-20240601020000")
    names = ArchiveTool(host, config).list(repo, glob=config.archive_glob(Dataset("zdata")))
    assert "zdata_data_month-20240601020000" in names
    assert overlapping_globs(config) == [("zdata", "zdata/data")]


def test_sibling_datasets_do_not_overlap(tmp_path):
    config = make_config(
        tmp_path,
        datasets=(Dataset("zdata/data"), Dataset("zdata/photos")),
        mono_repo="shared",
    )
    assert overlapping_globs(config) == []


def test_same_normalized_name_overlaps(tmp_path):
    config = make_config(
        tmp_path,
        datasets=(Dataset("pool/a_b"), Dataset("pool/a/b")),
        mono_repo="shared",
    )
    assert overlapping_globs(config) == [("pool/a/b", "pool/a_b")]


def test_separate_repositories_never_overlap(tmp_path):
    config = make_config(tmp_path, datasets=(Dataset("zdata"), Dataset("zdata/data")))
    assert overlapping_globs(config) == []
