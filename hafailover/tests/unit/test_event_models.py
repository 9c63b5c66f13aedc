from __future__ import annotations

from hafailover.domain.models import FailoverEvent, Role


def test_role_parse_accepts_only_exact_tokens() -> None:
    # Anything other than the two CARP tokens is ignorable.
    assert Role.parse("MASTER") is Role.MASTER
    assert Role.parse("BACKUP") is Role.BACKUP
    assert Role.parse("master") is None
    assert Role.parse("INIT") is None
    assert Role.parse(None) is None


def test_event_from_args_detects_dry_run() -> None:
    # Only the literal dry-run marker switches the run into planning mode.
    event = FailoverEvent.from_args("1@igb0", "MASTER", "dry-run")
    assert event.recognized
    assert event.dry_run
    assert event.subsystem == "1@igb0"
    assert not FailoverEvent.from_args("1@igb0", "MASTER", "dryrun").dry_run


def test_unrecognized_event() -> None:
    # Keep the raw token for logging even when it does not map to a role.
    event = FailoverEvent.from_args("1@igb0", "INIT")
    assert not event.recognized
    assert event.raw == "INIT"
