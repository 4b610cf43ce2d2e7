"""Start, stop and query long-running services on a target.

Supports PM2 (the Node.js backend), systemd (Nginx, PostgreSQL) and
arbitrary command triples. The controller is the only component that changes
a service's recorded ``ServiceState``.
"""

from __future__ import annotations

import json
import posixpath
import shlex

from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.lib.errors import ConfigError, ServiceError, TransportError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.service import ProcessManager, ServiceSpec, ServiceState

logger = get_logger(__name__)

PM2_STATUS_MAP = {
    "online": ServiceState.RUNNING,
    "launching": ServiceState.STARTING,
    "waiting restart": ServiceState.STARTING,
    "stopping": ServiceState.STOPPED,
    "stopped": ServiceState.STOPPED,
    "errored": ServiceState.CRASHED,
    "one-launch-status": ServiceState.STOPPED,
}

SYSTEMD_STATUS_MAP = {
    "active": ServiceState.RUNNING,
    "reloading": ServiceState.RUNNING,
    "activating": ServiceState.STARTING,
    "deactivating": ServiceState.STOPPED,
    "inactive": ServiceState.STOPPED,
    "failed": ServiceState.CRASHED,
}


class ServiceController:
    """Controls the services configured for one target.

    No operation retries; retry policy belongs to the orchestrator.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        services: list[ServiceSpec],
        timeout: float | None = None,
    ) -> None:
        self._executor = executor
        self._services = {service.name: service for service in services}
        self._timeout = timeout
        self._states: dict[str, ServiceState] = {
            name: ServiceState.UNKNOWN for name in self._services
        }

    @property
    def services(self) -> list[ServiceSpec]:
        return list(self._services.values())

    def state(self, name: str) -> ServiceState:
        """Return the last state recorded for a service, without querying."""
        self._spec(name)
        return self._states[name]

    def start(self, name: str) -> None:
        """Start a service.

        Raises:
            ServiceError: If the start command fails; the state becomes CRASHED
        """
        spec = self._spec(name)
        logger.info(f"Starting service {name}")
        self._states[name] = ServiceState.STARTING
        try:
            self._executor.execute(self._start_command(spec), timeout=self._timeout)
        except TransportError as exc:
            self._states[name] = ServiceState.CRASHED
            raise ServiceError(name, "start", exc.message) from exc
        self._states[name] = ServiceState.RUNNING

    def stop(self, name: str, tolerate_stopped: bool = False) -> None:
        """Stop a service.

        Args:
            name: Service name
            tolerate_stopped: Treat a failed stop as success when the service
                is confirmed not running

        Raises:
            ServiceError: If the stop command fails
        """
        spec = self._spec(name)
        logger.info(f"Stopping service {name}")
        try:
            self._executor.execute(self._stop_command(spec), timeout=self._timeout)
        except TransportError as exc:
            if tolerate_stopped and self.status(name) != ServiceState.RUNNING:
                logger.info(f"Service {name} was not running")
                self._states[name] = ServiceState.STOPPED
                return
            raise ServiceError(name, "stop", exc.message) from exc
        self._states[name] = ServiceState.STOPPED

    def restart(self, name: str) -> None:
        """Stop (already-stopped is fine) then start a service.

        Raises:
            ServiceError: If stopping a running service or starting it fails
        """
        self.stop(name, tolerate_stopped=True)
        self.start(name)

    def status(self, name: str) -> ServiceState:
        """Query the process manager for a service's state.

        Raises:
            TransportError: If the target cannot be reached
        """
        spec = self._spec(name)
        if spec.manager == ProcessManager.PM2:
            state = self._pm2_status(spec)
        elif spec.manager == ProcessManager.SYSTEMD:
            state = self._systemd_status(spec)
        else:
            result = self._executor.execute(
                self._in_workdir(spec, spec.status_command or "false"),
                timeout=self._timeout,
                check=False,
            )
            state = ServiceState.RUNNING if result.ok else ServiceState.STOPPED
        self._states[name] = state
        return state

    def _spec(self, name: str) -> ServiceSpec:
        try:
            return self._services[name]
        except KeyError:
            raise ConfigError("services", f"Unknown service: {name}") from None

    def _in_workdir(self, spec: ServiceSpec, command: str) -> str:
        if not spec.workdir:
            return command
        workdir = posixpath.join(self._executor.target.deploy_root, spec.workdir)
        return f"cd {shlex.quote(workdir)} && {command}"

    def _systemctl(self, spec: ServiceSpec, action: str) -> str:
        prefix = "sudo " if spec.use_sudo else ""
        return f"{prefix}systemctl {action} {shlex.quote(spec.name)}"

    def _start_command(self, spec: ServiceSpec) -> str:
        if spec.start_command:
            command = spec.start_command
        elif spec.manager == ProcessManager.PM2:
            command = f"pm2 start {shlex.quote(spec.name)}"
        else:
            command = self._systemctl(spec, "start")
        if spec.manager == ProcessManager.PM2:
            command = f"{command} && pm2 save"
        return self._in_workdir(spec, command)

    def _stop_command(self, spec: ServiceSpec) -> str:
        if spec.stop_command:
            command = spec.stop_command
        elif spec.manager == ProcessManager.PM2:
            command = f"pm2 stop {shlex.quote(spec.name)}"
        else:
            command = self._systemctl(spec, "stop")
        return self._in_workdir(spec, command)

    def _pm2_status(self, spec: ServiceSpec) -> ServiceState:
        result = self._executor.execute("pm2 jlist", timeout=self._timeout, check=False)
        if not result.ok:
            return ServiceState.UNKNOWN
        try:
            processes = json.loads(result.stdout or "[]")
        except json.JSONDecodeError:
            logger.warning(f"Unparseable pm2 jlist output for {spec.name}")
            return ServiceState.UNKNOWN
        for process in processes:
            if process.get("name") == spec.name:
                status = process.get("pm2_env", {}).get("status", "")
                return PM2_STATUS_MAP.get(status, ServiceState.UNKNOWN)
        return ServiceState.STOPPED

    def _systemd_status(self, spec: ServiceSpec) -> ServiceState:
        # is-active exits non-zero for anything but "active"; the text is what matters
        result = self._executor.execute(
            f"systemctl is-active {shlex.quote(spec.name)}",
            timeout=self._timeout,
            check=False,
        )
        return SYSTEMD_STATUS_MAP.get(result.stdout.strip(), ServiceState.UNKNOWN)
