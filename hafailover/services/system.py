from __future__ import annotations

from dataclasses import dataclass
from ipaddress import ip_address
import json
from pathlib import Path
import socket
import subprocess
from typing import Any, Callable, Sequence

import psutil

from hafailover.core.config import Settings
from hafailover.core.errors import CommandError
from hafailover.domain.models import Role


Runner = Callable[..., subprocess.CompletedProcess]

CARP_MASTER_MARKER = "carp: MASTER"


@dataclass(frozen=True)
class CommandResult:
    # Normalize subprocess outcomes so callers never see raw exceptions.
    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def _read_pid(pid_file: str | Path) -> int | None:
    try:
        raw = Path(pid_file).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        pid = int(raw.split()[0]) if raw else 0
    except ValueError:
        return None
    return pid if pid > 0 else None


class SystemGateway:
    """Command execution and host queries used by the failover run.

    Commands go through ``subprocess`` with a bounded timeout; interface and
    process state come from ``psutil`` so the queries do not depend on
    parsing tool output.
    """

    def __init__(self, settings: Settings, *, runner: Runner | None = None) -> None:
        self._settings = settings
        self._runner = runner or subprocess.run

    def run(self, args: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        argv = tuple(str(arg) for arg in args)
        try:
            completed = self._runner(
                list(argv),
                capture_output=True,
                text=True,
                timeout=timeout or self._settings.command_timeout_s,
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(argv, 127, "", str(exc))
        except subprocess.TimeoutExpired:
            return CommandResult(argv, 124, "", f"timed out after {timeout or self._settings.command_timeout_s}s")
        return CommandResult(argv, completed.returncode, completed.stdout or "", completed.stderr or "")

    def configctl(self, *args: str) -> str:
        # Route actions through configd; non-zero exit means the action was rejected.
        result = self.run([self._settings.configctl_path, *args])
        if not result.ok:
            detail = (result.stderr or result.stdout).strip() or f"exit code {result.returncode}"
            raise CommandError(
                f"configctl {' '.join(args)} failed: {detail}",
                returncode=result.returncode,
                output=result.stdout,
            )
        return result.stdout

    def reconfigure_interfaces(self) -> None:
        self.configctl("interface", "all", "reconfigure")

    def control_service(self, action: str, name: str) -> None:
        self.configctl("service", action, name)

    def ping(self, target: str, *, timeout: int = 1, ipv6: bool = False) -> bool:
        binary = self._settings.ping6_path if ipv6 else self._settings.ping_path
        result = self.run([binary, "-c", "1", "-W", str(timeout), target], timeout=timeout + 5)
        return result.ok

    def _addresses(self, device: str, family: int) -> list[str]:
        addresses = psutil.net_if_addrs().get(device, [])
        found = []
        for entry in addresses:
            if entry.family == family and entry.address:
                # Strip the zone suffix psutil reports for scoped IPv6 addresses.
                found.append(entry.address.split("%", 1)[0])
        return found

    def interface_ipv4(self, device: str) -> str | None:
        addresses = self._addresses(device, socket.AF_INET)
        return addresses[0] if addresses else None

    def interface_ipv6(self, device: str) -> str | None:
        for address in self._addresses(device, socket.AF_INET6):
            parsed = ip_address(address)
            if not (parsed.is_link_local or parsed.is_loopback):
                return address
        return None

    def interface_is_up(self, device: str) -> bool:
        stats = psutil.net_if_stats().get(device)
        return bool(stats and stats.isup)

    def pid_file_alive(self, pid_file: str | Path) -> bool:
        pid = _read_pid(pid_file)
        return pid is not None and psutil.pid_exists(pid)

    def terminate_pid_file(self, pid_file: str | Path, *, wait_s: float = 5.0) -> bool:
        # Stop the process recorded in a pid file; a missing or stale file is not an error.
        pid = _read_pid(pid_file)
        if pid is None:
            return False
        try:
            process = psutil.Process(pid)
            process.terminate()
            try:
                process.wait(timeout=wait_s)
            except psutil.TimeoutExpired:
                try:
                    process.kill()
                except psutil.NoSuchProcess:
                    # Exited on its own between the wait and the kill.
                    pass
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied as exc:
            raise CommandError(f"not permitted to signal pid {pid} from {pid_file}") from exc
        except psutil.Error as exc:
            raise CommandError(f"failed to stop pid {pid} from {pid_file}: {exc}") from exc
        return True

    def carp_status(self) -> Role:
        result = self.run([self._settings.ifconfig_path])
        return Role.MASTER if CARP_MASTER_MARKER in result.stdout else Role.BACKUP

    def default_routes(self) -> list[dict[str, Any]]:
        raw = self.configctl("interface", "routes", "list", "-n", "json")
        try:
            routes = json.loads(raw or "[]")
        except json.JSONDecodeError:
            return []
        return [route for route in routes if isinstance(route, dict)]

    def set_default_route(self, gateway_ip: str, device: str, *, ipv6: bool = False) -> CommandResult:
        family = "-inet6" if ipv6 else "-inet"
        target = gateway_ip
        if ipv6 and "%" not in gateway_ip and ip_address(gateway_ip).is_link_local:
            target = f"{gateway_ip}%{device}"
        # Replace in place; fall back to add when no default route exists yet.
        result = self.run([self._settings.route_path, "-q", "change", family, "default", target])
        if not result.ok:
            result = self.run([self._settings.route_path, "-q", "add", family, "default", target])
        return result
