from __future__ import annotations

import argparse
from pathlib import Path
import signal
from types import FrameType

from hafailover.core.config import get_settings
from hafailover.core.logging import configure_logging
from hafailover.domain.models import FailoverEvent
from hafailover.services.runner import RunContext, run_carp_event


def _build_parser() -> argparse.ArgumentParser:
    # Positional order matches the carp syshook: subsystem, new role, optional dry-run marker.
    parser = argparse.ArgumentParser(description="Align this node with its new CARP role")
    parser.add_argument("subsystem", help="CARP subsystem that changed, e.g. 1@igb0")
    parser.add_argument("role", help="New CARP role: MASTER or BACKUP (anything else is ignored)")
    parser.add_argument("mode", nargs="?", default=None, help="Pass 'dry-run' to log actions without applying them")
    parser.add_argument("--config", default=None, help="Override the HA failover config path")
    return parser


def _terminate(signum: int, _frame: FrameType | None) -> None:
    # Turn termination into SystemExit so scoped cleanup (lock release) still runs.
    raise SystemExit(1)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    event = FailoverEvent.from_args(args.subsystem, args.role, args.mode)
    settings = get_settings()
    logger = configure_logging(settings, dry_run=event.dry_run)
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, _terminate)
    ctx = RunContext.default(settings, logger, dry_run=event.dry_run)
    return run_carp_event(event, ctx, config_path=Path(args.config) if args.config else None)


if __name__ == "__main__":
    raise SystemExit(main())
