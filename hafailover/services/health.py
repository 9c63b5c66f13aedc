from __future__ import annotations

from dataclasses import dataclass
from ipaddress import IPv4Address, ip_address
import time
from typing import Callable

from hafailover.core.logging import StructuredLogger
from hafailover.domain.ha_config import HAConfig
from hafailover.services.system import SystemGateway


LOCAL_PING_TIMEOUT_S = 1


@dataclass(frozen=True)
class HealthVerdict:
    local_ok: bool
    external_v4_ok: bool
    external_v6_ok: bool
    require_external: bool

    @property
    def external_ok(self) -> bool:
        return self.external_v4_ok or self.external_v6_ok

    @property
    def passed(self) -> bool:
        if self.require_external:
            return self.local_ok and self.external_ok
        return self.local_ok or self.external_ok


def is_routable_ipv4(value: str | None) -> bool:
    if not value:
        return False
    try:
        parsed = ip_address(value)
    except ValueError:
        return False
    return isinstance(parsed, IPv4Address) and not parsed.is_private


class HealthCheckEngine:
    """Verify that this node actually serves as MASTER.

    A single pass checks the WAN address first (a mismatch fails outright),
    then the optional local target, then external IPv4 and IPv6 targets.
    """

    def __init__(
        self,
        settings: HAConfig,
        system: SystemGateway,
        logger: StructuredLogger,
        *,
        resolve_device: Callable[[str], str],
        sleep: Callable[[float], None] = time.sleep,
        dry_run: bool = False,
    ) -> None:
        self._settings = settings
        self._system = system
        self._log = logger
        self._resolve_device = resolve_device
        self._sleep = sleep
        self._dry_run = dry_run

    def check_once(self) -> bool:
        if self._dry_run:
            self._log.info("health_check_skipped", reason="dry_run")
            return True
        if not self._wan_address_ok():
            return False

        health = self._settings.health_check
        local_ok = True
        if health.local_target is not None:
            local_ok = self._system.ping(str(health.local_target), timeout=LOCAL_PING_TIMEOUT_S)

        external_v4_ok = any(
            self._system.ping(target, timeout=health.ping_timeout) for target in health.targets_v4
        )
        verdict = HealthVerdict(
            local_ok=local_ok,
            external_v4_ok=external_v4_ok,
            external_v6_ok=self._external_v6_ok(),
            require_external=health.require_external_connectivity,
        )
        self._log.info(
            "health_check_results",
            local_ok=verdict.local_ok,
            external_v4_ok=verdict.external_v4_ok,
            external_v6_ok=verdict.external_v6_ok,
        )
        return verdict.passed

    def _wan_address_ok(self) -> bool:
        device = self._resolve_device(self._settings.interfaces.wan_key)
        wan_ip = self._system.interface_ipv4(device)
        if self._settings.is_dhcp:
            if not is_routable_ipv4(wan_ip):
                self._log.error("health_check_failed", reason="invalid_dhcp_lease", current_ip=wan_ip or "None")
                return False
        elif wan_ip != self._settings.wan_ipv4:
            self._log.error(
                "health_check_failed",
                reason="wan_ip_mismatch",
                expected=self._settings.wan_ipv4,
                actual=wan_ip,
            )
            return False
        return True

    def _external_v6_ok(self) -> bool:
        tunnel_key = self._settings.interfaces.tunnel_key
        health = self._settings.health_check
        if not tunnel_key or not health.targets_v6:
            return False
        if not self._system.interface_ipv6(self._resolve_device(tunnel_key)):
            self._log.warning("health_check_warn", reason="no_ipv6_on_tunnel", interface=tunnel_key)
            return False
        return any(
            self._system.ping(target, timeout=health.ping_timeout, ipv6=True) for target in health.targets_v6
        )

    def check_with_retries(self, retries: int | None = None, delay: int | None = None) -> bool:
        timeouts = self._settings.timeouts
        retries = timeouts.health_check_retries if retries is None else retries
        delay = timeouts.health_check_retry_delay if delay is None else delay
        for attempt in range(1, retries + 1):
            if self.check_once():
                return True
            if attempt < retries:
                self._log.notice("health_check_retry", attempt=attempt, delay=delay)
                self._sleep(delay)
        return False
