from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Callable

from hafailover.core.errors import CommandError
from hafailover.core.logging import StructuredLogger
from hafailover.domain.ha_config import FailoverGateways
from hafailover.services.system import SystemGateway
from hafailover.services.system_config import ConfigHandle


ROUTE_MAX_ATTEMPTS = 3
ROUTE_RETRY_PAUSE_S = 2


@dataclass(frozen=True)
class FailoverRoute:
    name: str
    gateway_ip: str
    interface_key: str

    @property
    def ipv6(self) -> bool:
        return ":" in self.gateway_ip

    @property
    def family(self) -> str:
        return "ipv6" if self.ipv6 else "ipv4"


class RouteEnforcer:
    """Re-assert the failover default routes on a passive node.

    Each gateway named in ``failover_gateways`` is looked up in the gateway
    configuration, installed as the default route for its family and then
    verified against the live route table.
    """

    def __init__(
        self,
        system: SystemGateway,
        config: ConfigHandle,
        logger: StructuredLogger,
        *,
        settle_delay: int = 2,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int = ROUTE_MAX_ATTEMPTS,
    ) -> None:
        self._system = system
        self._config = config
        self._log = logger
        self._settle_delay = settle_delay
        self._sleep = sleep
        self._max_attempts = max_attempts

    def resolve(self, gateways: FailoverGateways) -> list[FailoverRoute]:
        wanted = {name for name in (gateways.ipv4, gateways.ipv6) if name}
        found = []
        for item in self._config.gateway_items():
            name = item.get("name", "")
            if name in wanted and item.get("gateway") and item.get("interface"):
                found.append(FailoverRoute(name, item["gateway"], item["interface"]))
        return found

    def enforce(self, gateways: FailoverGateways) -> bool:
        self._config.reload()
        routes = self.resolve(gateways)
        if not routes:
            self._log.error("failover_gateways_not_found", ipv4=gateways.ipv4, ipv6=gateways.ipv6)
            return False
        results = [self.set_and_verify(route) for route in routes]
        return all(results)

    def set_and_verify(self, route: FailoverRoute) -> bool:
        device = self._config.interface_device(route.interface_key)
        if not self._system.interface_is_up(device):
            self._log.error(
                "route_skipped",
                family=route.family,
                interface=route.interface_key,
                device=device,
                reason="interface_down",
            )
            return False

        for attempt in range(1, self._max_attempts + 1):
            self._log.info(
                "route_set_attempt",
                family=route.family,
                gateway=route.gateway_ip,
                attempt=attempt,
                max_attempts=self._max_attempts,
            )
            self._system.set_default_route(route.gateway_ip, device, ipv6=route.ipv6)
            self._sleep(self._settle_delay)
            if self.route_installed(route):
                self._log.info("route_installed", family=route.family, gateway=route.gateway_ip)
                return True
            self._log.warning("route_verify_failed", family=route.family, gateway=route.gateway_ip, attempt=attempt)
            if attempt < self._max_attempts:
                self._sleep(ROUTE_RETRY_PAUSE_S)

        self._log.error(
            "route_install_failed",
            family=route.family,
            gateway=route.gateway_ip,
            attempts=self._max_attempts,
        )
        return False

    def route_installed(self, route: FailoverRoute) -> bool:
        try:
            entries = self._system.default_routes()
        except CommandError as exc:
            self._log.warning("route_table_unavailable", error=str(exc))
            return False
        for entry in entries:
            if (
                entry.get("destination") == "default"
                and entry.get("gateway") == route.gateway_ip
                and entry.get("proto") == route.family
            ):
                return True
        return False
