from __future__ import annotations

import argparse
from pathlib import Path

from hafailover.core.config import get_settings
from hafailover.core.errors import HAFailoverError
from hafailover.core.logging import configure_logging
from hafailover.domain.ha_config import load_ha_config
from hafailover.services.routes import RouteEnforcer
from hafailover.services.system import SystemGateway
from hafailover.services.system_config import XmlConfigHandle


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Install and verify the failover default routes")
    parser.add_argument("--config", default=None, help="Override the HA failover config path")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    logger = configure_logging(settings)
    path = Path(args.config or settings.config_path)
    try:
        ha_config = load_ha_config(path, strict_permissions=settings.config_require_strict_permissions)
        enforcer = RouteEnforcer(
            SystemGateway(settings),
            XmlConfigHandle(Path(settings.system_config_path)),
            logger,
            settle_delay=ha_config.timeouts.route_settle_delay,
        )
        return 0 if enforcer.enforce(ha_config.failover_gateways) else 1
    except HAFailoverError as exc:
        logger.error("route_enforcer_failed", kind=exc.kind.value, error=str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
