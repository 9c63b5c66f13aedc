from __future__ import annotations

import json
from pathlib import Path

from hafailover.domain.models import FailoverEvent
from hafailover.services.lock import LockManager
from hafailover.services.runner import RunContext, run_carp_event


def _context(settings, logger, system, config_handle, clock) -> RunContext:
    return RunContext(settings, logger, system, config_handle, sleep=clock.sleep, clock=clock)


def test_static_master_end_to_end(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # A BACKUP node receiving MASTER ends up configured, healthy and recorded as MASTER.
    write_ha_config(ha_config_data)
    Path(settings.state_path).write_text(f"BACKUP:{int(clock.now)}", encoding="utf-8")
    system.running_pid_files.add("/var/run/unbound.pid")

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "MASTER"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 0
    assert config_handle.writes[0][1]["wan"]["ipaddr"] == "203.0.113.10"
    assert system.reconfigure_calls == 1
    assert Path(settings.state_path).read_text(encoding="utf-8").startswith("MASTER:")
    assert not Path(settings.lock_path).exists()
    names = recorder.names()
    assert names[0] == "lock_acquired"
    assert names[-1] == "lock_released"
    assert "master_transition_complete" in names


def test_master_apply_exhaustion_end_to_end(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # Five failed reconfigures exit 1 and leave one recorded failure behind.
    write_ha_config(ha_config_data)
    Path(settings.state_path).write_text(f"BACKUP:{int(clock.now)}", encoding="utf-8")
    system.reconfigure_failures = 99

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "MASTER"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 1
    assert system.reconfigure_calls == 5
    failures = json.loads(Path(settings.failure_state_path).read_text(encoding="utf-8"))
    assert failures["count"] == 1
    assert Path(settings.state_path).read_text(encoding="utf-8").startswith("BACKUP:")
    assert not Path(settings.lock_path).exists()


def test_backup_while_lock_held(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # A concurrent run yields with exit 1 and mutates nothing.
    write_ha_config(ha_config_data)
    state_text = f"MASTER:{int(clock.now)}"
    Path(settings.state_path).write_text(state_text, encoding="utf-8")
    holder = LockManager(Path(settings.lock_path), logger)
    assert holder.acquire()
    try:
        code = run_carp_event(
            FailoverEvent.from_args("1@igb0", "BACKUP"),
            _context(settings, logger, system, config_handle, clock),
        )
    finally:
        holder.release()

    assert code == 1
    assert config_handle.writes == []
    assert system.service_calls == []
    assert Path(settings.state_path).read_text(encoding="utf-8") == state_text
    assert recorder.find("lock_acquire_failed")[0]["context"]["reason"] == "already_locked"


def test_dry_run_master_touches_nothing(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # Planning mode walks the whole sequence and leaves the host unchanged.
    write_ha_config(ha_config_data)

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "MASTER", "dry-run"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 0
    assert config_handle.writes == []
    assert system.reconfigure_calls == 0
    assert system.service_calls == []
    assert system.pings == []
    assert system.terminated == []
    assert not Path(settings.state_path).exists()
    assert not Path(settings.failure_state_path).exists()
    assert list(Path(settings.backup_dir).iterdir()) == []
    names = recorder.names()
    for expected in ("config_apply_planned", "service_control_planned", "health_check_skipped"):
        assert expected in names
    summary = recorder.find("transition_summary")[0]["context"]
    assert summary == {"to_state": "MASTER", "success": True, "dry_run": True}


def test_dry_run_backup_plans_gateway_monitor_stop(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # The gateway monitor is named but never signalled in planning mode.
    write_ha_config(ha_config_data)
    Path(settings.state_path).write_text(f"MASTER:{int(clock.now)}", encoding="utf-8")

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "BACKUP", "dry-run"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 0
    assert system.terminated == []
    assert "gateway_monitor_stop_planned" in recorder.names()
    assert Path(settings.state_path).read_text(encoding="utf-8").startswith("MASTER:")


def test_unrecognized_event_is_ignored(settings, logger, recorder, system, config_handle, clock) -> None:
    # Tokens other than MASTER and BACKUP exit cleanly before any file is opened.
    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "INIT"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 0
    assert recorder.names() == ["event_ignored"]
    assert not Path(settings.lock_path).exists()
    assert not Path(settings.state_path).exists()


def test_invalid_config_aborts_before_lock(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config
) -> None:
    # A world-readable config file is refused and nothing else runs.
    write_ha_config(ha_config_data, mode=0o644)

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "MASTER"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 1
    assert recorder.names() == ["config_validation_failed"]
    assert recorder.events[0]["level"] == "CRITICAL"
    assert config_handle.writes == []


def test_unexpected_exception_maps_to_exit_one(
    settings, logger, recorder, system, config_handle, clock, ha_config_data, write_ha_config, monkeypatch
) -> None:
    # Anything the orchestrator did not anticipate is logged and still releases the lock.
    write_ha_config(ha_config_data)
    Path(settings.state_path).write_text(f"BACKUP:{int(clock.now)}", encoding="utf-8")

    def explode() -> dict:
        raise RuntimeError("kernel said no")

    monkeypatch.setattr(config_handle, "interfaces", explode)

    code = run_carp_event(
        FailoverEvent.from_args("1@igb0", "MASTER"),
        _context(settings, logger, system, config_handle, clock),
    )

    assert code == 1
    error = recorder.find("critical_error")[0]["context"]
    assert error == {"error": "kernel said no", "error_type": "RuntimeError"}
    assert not Path(settings.lock_path).exists()
    failures = json.loads(Path(settings.failure_state_path).read_text(encoding="utf-8"))
    assert failures["count"] == 1
