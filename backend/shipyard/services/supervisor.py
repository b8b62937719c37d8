"""Process supervisor collaborators.

The pipeline hands an app's start command, workspace and environment to a
``ProcessSupervisor``, which keeps the process alive and restarts it on
boot. ``SystemdSupervisor`` does this with one unit file per app;
``NoopSupervisor`` records registrations in memory for development hosts
without systemd.

Methods are synchronous (they shell out to ``systemctl``); the pipeline
calls them through ``asyncio.to_thread``.
"""

import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import RegistrationError

logger = logging.getLogger(__name__)

UNIT_PREFIX = "shipyard-"

# systemctl calls are quick; a hung dbus should not wedge the worker
SYSTEMCTL_TIMEOUT_SECONDS = 60

# Environment every service of a runtime gets unless the app overrides it
RUNTIME_DEFAULT_ENV: Dict[str, Dict[str, str]] = {
    "node": {"NODE_ENV": "production"},
    "bun": {"NODE_ENV": "production"},
    "python": {"PYTHONUNBUFFERED": "1"},
}

# Executable looked up on the control plane's PATH for each runtime
RUNTIME_BINARIES = {"node": "node", "bun": "bun", "python": "python3"}

SERVICE_ACTIVE = "active"
SERVICE_INACTIVE = "inactive"
SERVICE_FAILED = "failed"
SERVICE_UNKNOWN = "unknown"


def unit_name(app_name: str) -> str:
    return f"{UNIT_PREFIX}{app_name}.service"


def service_env(runtime: str, env: Dict[str, str]) -> Dict[str, str]:
    """App env with runtime defaults filled in and PATH covering the runtime binary."""
    merged = dict(RUNTIME_DEFAULT_ENV.get(runtime, {}))
    merged.update(env)
    if "PATH" not in merged:
        search = ["/usr/local/sbin", "/usr/local/bin", "/usr/sbin", "/usr/bin", "/sbin", "/bin"]
        binary = shutil.which(RUNTIME_BINARIES.get(runtime, runtime))
        if binary:
            bin_dir = str(Path(binary).resolve().parent)
            if bin_dir not in search:
                search.insert(0, bin_dir)
        merged["PATH"] = ":".join(search)
    return merged


class ProcessSupervisor(ABC):
    """Contract the pipeline and lifecycle coordinator rely on."""

    @abstractmethod
    def register_service(
        self,
        app_name: str,
        start_command: str,
        cwd: Path,
        env: Dict[str, str],
        runtime: str = "node",
    ) -> None:
        """Create or replace the persistent service definition."""

    @abstractmethod
    def start_service(self, app_name: str) -> None:
        """Start the service, restarting it if it is already running."""

    @abstractmethod
    def stop_service(self, app_name: str) -> bool:
        """Stop the service. Returns False if it does not exist."""

    @abstractmethod
    def remove_service(self, app_name: str) -> bool:
        """Delete the service definition. Returns False if it does not exist."""

    @abstractmethod
    def service_status(self, app_name: str) -> str:
        """One of active, inactive, failed, activating, unknown."""

    @abstractmethod
    def service_logs(self, app_name: str, lines: int = 100) -> List[str]:
        """The last *lines* lines the running app wrote, oldest first."""


class SystemdSupervisor(ProcessSupervisor):
    """One ``shipyard-<app>.service`` unit per app."""

    def __init__(
        self,
        unit_dir: Path,
        systemctl: str = "systemctl",
        service_user: str = "",
        journalctl: str = "journalctl",
    ):
        self.unit_dir = Path(unit_dir)
        self.systemctl = systemctl
        self.journalctl = journalctl
        self.service_user = service_user

    def unit_path(self, app_name: str) -> Path:
        return self.unit_dir / unit_name(app_name)

    def render_unit(
        self,
        app_name: str,
        start_command: str,
        cwd: Path,
        env: Dict[str, str],
        runtime: str = "node",
    ) -> str:
        lines = [
            "[Unit]",
            f"Description=shipyard app {app_name} ({runtime})",
            "After=network.target",
            "",
            "[Service]",
            "Type=simple",
            f"WorkingDirectory={cwd}",
            f"ExecStart=/bin/sh -c {_quote(start_command, exec_line=True)}",
            "Restart=always",
            "RestartSec=3",
        ]
        if self.service_user:
            lines.append(f"User={self.service_user}")
        for key, value in sorted(service_env(runtime, env).items()):
            lines.append(f"Environment={_quote(f'{key}={value}')}")
        lines += [
            "StandardOutput=journal",
            "StandardError=journal",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
            "",
        ]
        return "\n".join(lines)

    def register_service(self, app_name, start_command, cwd, env, runtime="node") -> None:
        content = self.render_unit(app_name, start_command, cwd, env, runtime)
        path = self.unit_path(app_name)
        try:
            self.unit_dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".service.tmp")
            tmp.write_text(content)
            # Unit embeds env values, which may be secrets
            os.chmod(tmp, 0o640)
            tmp.replace(path)
        except OSError as e:
            raise RegistrationError("service", f"cannot write unit file {path}: {e}") from e
        logger.info(f"Wrote unit file {path}")
        self._systemctl("daemon-reload")
        self._systemctl("enable", unit_name(app_name))

    def start_service(self, app_name: str) -> None:
        # stop_service disables the unit; starting again brings it back on boot
        self._systemctl("enable", unit_name(app_name))
        self._systemctl("restart", unit_name(app_name))
        logger.info(f"Restarted {unit_name(app_name)}")

    def stop_service(self, app_name: str) -> bool:
        if not self.unit_path(app_name).exists():
            return False
        self._systemctl("stop", unit_name(app_name))
        self._systemctl("disable", unit_name(app_name), check=False)
        return True

    def remove_service(self, app_name: str) -> bool:
        path = self.unit_path(app_name)
        if not path.exists():
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise RegistrationError("service", f"cannot remove unit file {path}: {e}") from e
        self._systemctl("daemon-reload")
        self._systemctl("reset-failed", unit_name(app_name), check=False)
        return True

    def service_status(self, app_name: str) -> str:
        if not self.unit_path(app_name).exists():
            return SERVICE_UNKNOWN
        result = self._systemctl(
            "show", "-p", "ActiveState", "--value", unit_name(app_name), check=False
        )
        state = result.stdout.strip() if result.returncode == 0 else ""
        return state or SERVICE_UNKNOWN

    def service_logs(self, app_name: str, lines: int = 100) -> List[str]:
        if not self.unit_path(app_name).exists():
            return []
        result = self._run(
            self.journalctl,
            ["-u", unit_name(app_name), "-n", str(lines), "--no-pager", "-o", "cat"],
            check=True,
        )
        return result.stdout.splitlines()

    def _systemctl(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return self._run(self.systemctl, list(args), check=check)

    def _run(self, binary: str, args: List[str], check: bool) -> subprocess.CompletedProcess:
        cmd: List[str] = [binary, *args]
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=SYSTEMCTL_TIMEOUT_SECONDS,
            )
        except FileNotFoundError as e:
            raise RegistrationError("service", f"{binary} not found") from e
        except subprocess.TimeoutExpired as e:
            raise RegistrationError("service", f"`{' '.join(cmd)}` timed out") from e
        if check and result.returncode != 0:
            output = (result.stderr or result.stdout or "").strip()
            raise RegistrationError(
                "service",
                f"`{' '.join(cmd)}` exited with code {result.returncode}: {output[-500:]}",
            )
        return result


class NoopSupervisor(ProcessSupervisor):
    """Keeps registrations in memory. For hosts without systemd."""

    def __init__(self):
        self.services: Dict[str, Dict] = {}

    def register_service(self, app_name, start_command, cwd, env, runtime="node") -> None:
        self.services[app_name] = {
            "start_command": start_command,
            "cwd": str(cwd),
            "env": service_env(runtime, env),
            "runtime": runtime,
            "state": SERVICE_INACTIVE,
        }
        logger.info(f"Registered service for {app_name} (noop supervisor)")

    def start_service(self, app_name: str) -> None:
        service = self.services.get(app_name)
        if service is None:
            raise RegistrationError("service", f"no service registered for {app_name}")
        service["state"] = SERVICE_ACTIVE

    def stop_service(self, app_name: str) -> bool:
        service = self.services.get(app_name)
        if service is None:
            return False
        service["state"] = SERVICE_INACTIVE
        return True

    def remove_service(self, app_name: str) -> bool:
        return self.services.pop(app_name, None) is not None

    def service_status(self, app_name: str) -> str:
        service: Optional[Dict] = self.services.get(app_name)
        return service["state"] if service else SERVICE_UNKNOWN

    def service_logs(self, app_name: str, lines: int = 100) -> List[str]:
        # Nothing captures output without a real supervisor
        return []


def _quote(value: str, exec_line: bool = False) -> str:
    """Quote a value for a systemd unit line.

    systemd expands ``%`` specifiers on every line and ``$`` variables on
    Exec lines; both are doubled so the value is taken as written. Line
    breaks become C escapes, so a value can never start a directive of its own.
    """
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("%", "%%")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
    )
    if exec_line:
        escaped = escaped.replace("$", "$$")
    return f'"{escaped}"'
