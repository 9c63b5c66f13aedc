from __future__ import annotations

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="HA_FAILOVER_",
    )

    log_level: str = "INFO"
    # Syslog ident and facility used for production runs; dry-runs log to stdout.
    log_ident: str = "ha_failover"
    syslog_address: str = "/var/run/log"
    syslog_facility: str = "local4"

    # Operator-maintained HA config (JSON); must stay owner-only readable.
    config_path: str = "/usr/local/etc/ha_failover.conf"
    config_require_strict_permissions: bool = True

    # Per-node run artifacts; never replicated to the peer.
    lock_path: str = "/tmp/carp_failover.lock"
    state_path: str = "/tmp/carp_failover.state"
    failure_state_path: str = "/tmp/carp_failover.failures"

    # Gateway configuration store and the directory holding its rotated snapshots.
    system_config_path: str = "/conf/config.xml"
    backup_dir: str = "/tmp"

    # External tools driven through the command gateway.
    configctl_path: str = "/usr/local/sbin/configctl"
    ifconfig_path: str = "/sbin/ifconfig"
    ping_path: str = "/sbin/ping"
    ping6_path: str = "/sbin/ping6"
    route_path: str = "/sbin/route"
    # Gateway monitor pid file, formatted with the WAN gateway name.
    dpinger_pid_template: str = "/var/run/dpinger_{gateway}.pid"
    # Bound every external command so a hung tool cannot hold the lock forever.
    command_timeout_s: int = 120


@lru_cache
def get_settings() -> Settings:
    return Settings()
