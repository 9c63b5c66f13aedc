from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address
import json
import os
from pathlib import Path
import stat
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from hafailover.core.errors import ConfigurationError


WAN_MODE_STATIC = "static"
WAN_MODE_DHCP = "dhcp"

_KEY_PATTERN = r"^[a-zA-Z0-9_]+$"
_GATEWAY_PATTERN = r"^[a-zA-Z0-9_-]+$"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore", populate_by_name=True)


class InterfaceSettings(_Frozen):
    wan_key: str = Field(pattern=_KEY_PATTERN)
    # Empty string means no tunnel interface is managed.
    tunnel_key: str = ""


class NetworkSettings(_Frozen):
    wan_mode: Literal["static", "dhcp"] = WAN_MODE_STATIC
    wan_ipv4: IPv4Address | None = None
    wan_subnet_v4: int | None = Field(default=None, ge=1, le=32)
    wan_gateway_name: str = Field(pattern=_GATEWAY_PATTERN)
    tunnel_gateway_name: str | None = Field(default=None, pattern=_GATEWAY_PATTERN)

    @model_validator(mode="after")
    def _static_addressing_complete(self) -> NetworkSettings:
        # Static mode cannot be applied without a full address/prefix pair.
        if self.wan_mode == WAN_MODE_STATIC:
            if self.wan_ipv4 is None:
                raise ValueError("a valid network.wan_ipv4 is required in static mode")
            if self.wan_subnet_v4 is None:
                raise ValueError("network.wan_subnet_v4 must be 1-32 in static mode")
        return self


def _as_target_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return value


class HealthCheckSettings(_Frozen):
    local_target: IPv4Address | IPv6Address | None = None
    require_external_connectivity: bool = False
    targets_v4: list[str] = Field(default_factory=lambda: ["1.1.1.1"], alias="target")
    targets_v6: list[str] = Field(default_factory=list, alias="target_v6")
    ping_timeout: int = Field(default=2, ge=1, le=10)

    @field_validator("targets_v4", "targets_v6", mode="before")
    @classmethod
    def _normalize_targets(cls, value: Any) -> Any:
        return _as_target_list(value)


class TimeoutSettings(_Frozen):
    master_transition_delay: int = Field(default=20, ge=0, le=300)
    event_cooldown_period: int = Field(default=600, ge=30, le=3600)
    route_settle_delay: int = Field(default=2, ge=0, le=60)
    lock_wait_timeout: int = Field(default=60, ge=10, le=300)
    health_check_retries: int = Field(default=3, ge=1, le=5)
    health_check_retry_delay: int = Field(default=5, ge=1, le=20)
    service_verify_timeout: int = Field(default=15, ge=5, le=60)


class ServiceSpec(_Frozen):
    name: str = ""
    pid_file: str | None = None


class FailoverGateways(_Frozen):
    ipv4: str | None = "LAN_FAILOVER_GW"
    ipv6: str | None = "LAN_FAILOVER_GW_V6"


class HAConfig(_Frozen):
    interfaces: InterfaceSettings
    network: NetworkSettings
    health_check: HealthCheckSettings = Field(default_factory=HealthCheckSettings)
    timeouts: TimeoutSettings = Field(default_factory=TimeoutSettings)
    core_services: list[ServiceSpec] = Field(default_factory=list, alias="ha_core_services")
    standard_services: list[ServiceSpec] = Field(default_factory=list, alias="ha_controlled_services")
    failover_gateways: FailoverGateways = Field(default_factory=FailoverGateways)

    @property
    def is_dhcp(self) -> bool:
        return self.network.wan_mode == WAN_MODE_DHCP

    @property
    def wan_ipv4(self) -> str | None:
        return str(self.network.wan_ipv4) if self.network.wan_ipv4 is not None else None


def _format_validation_error(exc: ValidationError) -> str:
    # Flatten pydantic errors into "path: message" lines for operators.
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return "; ".join(parts)


def parse_ha_config(data: Any) -> HAConfig:
    if not isinstance(data, dict):
        raise ConfigurationError("configuration root must be a JSON object")
    try:
        return HAConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_error(exc)) from exc


def load_ha_config(path: Path, *, strict_permissions: bool = True) -> HAConfig:
    # Fail closed on anything unexpected: missing file, loose permissions, bad JSON or schema.
    if not path.is_file() or not os.access(path, os.R_OK):
        raise ConfigurationError(f"configuration file not found or not readable: {path}")
    if strict_permissions:
        mode = stat.S_IMODE(path.stat().st_mode)
        if mode != 0o600:
            raise ConfigurationError(f"configuration file {path} must have mode 600, found {mode:o}")
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"not valid JSON: {exc.msg} (line {exc.lineno})") from exc
    return parse_ha_config(data)
