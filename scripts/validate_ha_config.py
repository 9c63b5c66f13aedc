from __future__ import annotations

import argparse
from pathlib import Path

from hafailover.core.config import get_settings
from hafailover.core.errors import ConfigurationError
from hafailover.domain.ha_config import load_ha_config


_RULE = "-" * 50


def _build_parser() -> argparse.ArgumentParser:
    # Validate offline before deploying so a bad edit never reaches a CARP event.
    parser = argparse.ArgumentParser(description="Validate the HA failover configuration without taking any action")
    parser.add_argument("--config", default=None, help="Config path (defaults to HA_FAILOVER_CONFIG_PATH)")
    parser.add_argument(
        "--skip-permission-check",
        action="store_true",
        help="Do not require the file to be mode 600",
    )
    return parser


def _banner(title: str) -> None:
    print(_RULE)
    print(title)
    print(_RULE)


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    settings = get_settings()
    path = Path(args.config or settings.config_path)
    strict = settings.config_require_strict_permissions and not args.skip_permission_check

    print("HA Failover Configuration Validator")
    try:
        config = load_ha_config(path, strict_permissions=strict)
    except ConfigurationError as exc:
        _banner("Configuration INVALID")
        print(f"Reason: {exc}")
        return 1

    _banner("Configuration is VALID")
    print(f"Path: {path}")
    print(f"WAN: {config.interfaces.wan_key} ({config.network.wan_mode})")
    print(f"Services: {len(config.core_services)} core, {len(config.standard_services)} standard")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
