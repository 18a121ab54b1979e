"""CLI entry point for zfs-borg-rotate."""
from __future__ import annotations

import argparse
import sys
from datetime import datetime

from zbr import report
from zbr.backup import StepFailed
from zbr.borg import PreconditionError
from zbr.config import ConfigError, load_job
from zbr.executor import ExecutorError, LocalExecutor, SSHExecutor
from zbr.lifecycle import HookError, build_toolkit
from zbr.models import TIERS
from zbr.mount import MountError

FATAL = (ExecutorError, MountError, PreconditionError, StepFailed, HookError)


def _load(args):
    """Return (config, toolkit), or None after printing a config error."""
    try:
        config = load_job(args.config)
    except (ConfigError, OSError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        return None

    verbose = getattr(args, "verbose", False)
    remote_shell = None
    if config.remote is not None:
        remote_shell = SSHExecutor(
            host=config.remote.host,
            user=config.remote.user,
            port=config.remote.port,
            verbose=verbose,
        )
    return config, build_toolkit(config, LocalExecutor(verbose=verbose), remote_shell)


def cmd_run(args) -> int:
    from zbr.lifecycle import run_job
    loaded = _load(args)
    if loaded is None:
        return 1
    _, kit = loaded
    try:
        return run_job(kit, datetime.now())
    except FATAL as e:
        report.error(str(e))
        print("Run aborted. Use 'zbr tidy' to clean up before retrying.", file=sys.stderr)
        return 1


def cmd_snap(args) -> int:
    from zbr.lifecycle import snap_job
    loaded = _load(args)
    if loaded is None:
        return 1
    _, kit = loaded
    try:
        return snap_job(kit, args.label)
    except FATAL as e:
        report.error(str(e))
        return 1


def cmd_tidy(args) -> int:
    from zbr.tidy import tidy
    loaded = _load(args)
    if loaded is None:
        return 1
    _, kit = loaded
    return tidy(kit, datetime.now())


def cmd_status(args) -> int:
    """Show the newest label of each tier and what `run` would do today."""
    from zbr.lifecycle import tier_history
    loaded = _load(args)
    if loaded is None:
        return 1
    config, kit = loaded
    now = datetime.now()

    print(f"{'Dataset':<35} " + " ".join(f"{t:>16}" for t in TIERS) + f" {'Today':>14}")
    print("-" * (35 + 17 * len(TIERS) + 15))
    for dataset in config.datasets:
        try:
            labels = tier_history(kit, dataset)
            choice = kit.scheduler.select(dataset, now)
        except FATAL as e:
            report.error(f"{dataset.name}: {e}")
            continue
        newest = []
        for tier in TIERS:
            of_tier = [label for label in labels if label.tier == tier]
            newest.append(max(of_tier).stamp if of_tier else "-")
        today = choice.tier + ("*" if choice.forced else "")
        print(f"{dataset.name:<35} " + " ".join(f"{n:>16}" for n in newest) + f" {today:>14}")
    print("\n* forced: tier has no history yet")
    return 0


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(
        prog="zbr",
        description="ZFS/borg rotation: tiered month/week/day backups",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(p):
        p.add_argument("config", help="Path to job YAML config file")
        p.add_argument("--verbose", "-v", action="store_true",
                       help="Show every external command")

    p_run = sub.add_parser("run", help="Snapshot, archive and prune every dataset")
    add_common(p_run)
    p_run.set_defaults(func=cmd_run)

    p_snap = sub.add_parser("snap", help="Archive an existing snapshot without pruning")
    add_common(p_snap)
    p_snap.add_argument("label", help="Name of the existing snapshot to archive")
    p_snap.set_defaults(func=cmd_snap)

    p_tidy = sub.add_parser("tidy", help="Remove today's mounts, snapshots and archives")
    add_common(p_tidy)
    p_tidy.set_defaults(func=cmd_tidy)

    p_status = sub.add_parser("status", help="Show tier history for each dataset")
    add_common(p_status)
    p_status.set_defaults(func=cmd_status)

    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
