from __future__ import annotations

from typing import Mapping

from hafailover.domain.ha_config import HAConfig


InterfaceMap = dict[str, dict[str, str]]

ENABLED = "1"
IPADDR_DHCP = "dhcp"
IPADDR_NONE = "none"


def _copy(interfaces: Mapping[str, Mapping[str, str]]) -> InterfaceMap:
    return {key: dict(values) for key, values in interfaces.items()}


def activate_interfaces(interfaces: Mapping[str, Mapping[str, str]], settings: HAConfig) -> InterfaceMap:
    # Bring the WAN entry (and optional tunnel) up with the configured addressing.
    updated = _copy(interfaces)
    wan = updated.setdefault(settings.interfaces.wan_key, {})
    if settings.is_dhcp:
        wan["ipaddr"] = IPADDR_DHCP
        wan.pop("subnet", None)
    else:
        wan["ipaddr"] = settings.wan_ipv4 or ""
        wan["subnet"] = str(settings.network.wan_subnet_v4)
    wan["enable"] = ENABLED
    wan["gateway"] = settings.network.wan_gateway_name
    tunnel_key = settings.interfaces.tunnel_key
    if tunnel_key:
        updated.setdefault(tunnel_key, {})["enable"] = ENABLED
    return updated


def deactivate_interfaces(interfaces: Mapping[str, Mapping[str, str]], settings: HAConfig) -> InterfaceMap:
    # Park the WAN entry with no address so the standby node never answers on it.
    updated = _copy(interfaces)
    wan = updated.setdefault(settings.interfaces.wan_key, {})
    wan.pop("enable", None)
    wan.pop("gateway", None)
    wan["ipaddr"] = IPADDR_NONE
    tunnel_key = settings.interfaces.tunnel_key
    if tunnel_key and tunnel_key in updated:
        updated[tunnel_key].pop("enable", None)
    return updated


def managed_entries(interfaces: Mapping[str, Mapping[str, str]], settings: HAConfig) -> InterfaceMap:
    # Only the entries the failover run owns are written back.
    keys = [settings.interfaces.wan_key]
    if settings.interfaces.tunnel_key:
        keys.append(settings.interfaces.tunnel_key)
    return {key: dict(interfaces[key]) for key in keys if key in interfaces}
