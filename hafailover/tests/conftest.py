from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any, Callable

import pytest

from hafailover.core.config import Settings, get_settings
from hafailover.core.logging import StructuredLogger
from hafailover.domain.ha_config import HAConfig, parse_ha_config
from hafailover.tests.utils.fakes import EventRecorder, FakeClock, FakeConfigHandle, FakeSystem


BASE_HA_CONFIG: dict[str, Any] = {
    "interfaces": {"wan_key": "wan", "tunnel_key": "opt1"},
    "network": {
        "wan_mode": "static",
        "wan_ipv4": "203.0.113.10",
        "wan_subnet_v4": 29,
        "wan_gateway_name": "WAN_GW",
    },
    "health_check": {
        "local_target": "192.168.1.1",
        "target": ["1.1.1.1", "9.9.9.9"],
        "target_v6": ["2606:4700:4700::1111"],
        "ping_timeout": 2,
    },
    "timeouts": {
        "master_transition_delay": 20,
        "event_cooldown_period": 600,
        "health_check_retries": 3,
        "health_check_retry_delay": 5,
        "service_verify_timeout": 5,
    },
    "ha_core_services": [{"name": "unbound", "pid_file": "/var/run/unbound.pid"}],
    "ha_controlled_services": [{"name": "openvpn"}, {"name": ""}],
}


@pytest.fixture(autouse=True)
def clear_settings_cache() -> None:
    # Keep env-driven settings isolated between tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def logger(recorder: EventRecorder) -> StructuredLogger:
    base = logging.getLogger("hafailover.tests")
    base.handlers = [recorder]
    base.setLevel(logging.DEBUG)
    base.propagate = False
    yield StructuredLogger(base, pid=4242, now=lambda: "2026-01-01T00:00:00+00:00")
    base.handlers = []


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def system() -> FakeSystem:
    return FakeSystem(
        addresses={"igb0": "203.0.113.10"},
        addresses_v6={"gif0": "2001:db8::2"},
        reachable={"192.168.1.1", "1.1.1.1", "2606:4700:4700::1111"},
    )


@pytest.fixture
def config_handle() -> FakeConfigHandle:
    return FakeConfigHandle()


@pytest.fixture
def ha_config_data() -> dict[str, Any]:
    return copy.deepcopy(BASE_HA_CONFIG)


@pytest.fixture
def ha_config(ha_config_data: dict[str, Any]) -> HAConfig:
    return parse_ha_config(ha_config_data)


@pytest.fixture
def write_ha_config(tmp_path: Path) -> Callable[[dict[str, Any]], Path]:
    def _write(data: dict[str, Any], *, mode: int = 0o600) -> Path:
        path = tmp_path / "ha_failover.conf"
        path.write_text(json.dumps(data), encoding="utf-8")
        path.chmod(mode)
        return path

    return _write


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    system_config = tmp_path / "config.xml"
    system_config.write_text("<opnsense><interfaces/></opnsense>", encoding="utf-8")
    return Settings(
        config_path=str(tmp_path / "ha_failover.conf"),
        lock_path=str(tmp_path / "carp_failover.lock"),
        state_path=str(tmp_path / "carp_failover.state"),
        failure_state_path=str(tmp_path / "carp_failover.failures"),
        system_config_path=str(system_config),
        backup_dir=str(backup_dir),
        dpinger_pid_template=str(tmp_path / "dpinger_{gateway}.pid"),
    )
