"""Liveness probes with bounded retry and pluggable backoff."""

from __future__ import annotations

import json
import shlex
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

import requests
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from hostdeploy.config.defaults import DEFAULT_HEALTH_CONFIG
from hostdeploy.deploy.executor import RemoteExecutor
from hostdeploy.deploy.services import ServiceController
from hostdeploy.lib.errors import ConfigError, TransportError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.config import BackoffConfig, BackoffStrategy
from hostdeploy.models.health import HealthStatus, HealthVerdict
from hostdeploy.models.service import (
    HttpHealthCheck,
    ProcessHealthCheck,
    ServiceSpec,
    ServiceState,
)

logger = get_logger(__name__)

# curl exit codes meaning the endpoint could not be reached at all
CURL_UNREACHABLE_CODES = {6, 7, 28, 35, 52, 56}

_BODY_EXCERPT = 500


class Backoff(Protocol):
    """Delay in seconds to wait after a failed attempt (1-based)."""

    def __call__(self, attempt: int) -> float: ...


@dataclass(frozen=True)
class FixedBackoff:
    """Same delay after every attempt."""

    delay: float = float(DEFAULT_HEALTH_CONFIG["delay"])

    def __call__(self, attempt: int) -> float:
        return self.delay


@dataclass(frozen=True)
class LinearBackoff:
    """``delay + step * (attempt - 1)``, capped at ``max_delay``."""

    delay: float
    step: float
    max_delay: float

    def __call__(self, attempt: int) -> float:
        return min(self.max_delay, self.delay + self.step * max(0, attempt - 1))


@dataclass(frozen=True)
class ExponentialBackoff:
    """``delay * factor ** (attempt - 1)``, capped at ``max_delay``."""

    delay: float
    factor: float
    max_delay: float

    def __call__(self, attempt: int) -> float:
        exponent = max(0, attempt - 1)
        # avoid float overflow for very large attempt numbers
        if self.delay > 0 and exponent > 64:
            return self.max_delay
        return min(self.max_delay, self.delay * self.factor**exponent)


def create_backoff(config: BackoffConfig) -> Backoff:
    """Build the backoff function described by the configuration."""
    if config.strategy == BackoffStrategy.FIXED:
        return FixedBackoff(config.delay)
    if config.strategy == BackoffStrategy.LINEAR:
        return LinearBackoff(config.delay, config.step, max(config.max_delay, config.delay))
    if config.strategy == BackoffStrategy.EXPONENTIAL:
        return ExponentialBackoff(
            config.delay, config.factor, max(config.max_delay, config.delay)
        )
    raise ConfigError("health.backoff.strategy", f"Unknown strategy: {config.strategy}")


class HealthProbe:
    """Probes services and classifies the result.

    HTTP checks are issued with requests from the machine running hostdeploy,
    or with curl on the target when ``from_target`` is set. Process checks ask
    the ServiceController for the process manager's view.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        services: ServiceController,
        timeout: float = float(DEFAULT_HEALTH_CONFIG["timeout"]),
        backoff: Backoff | None = None,
        sleep: Callable[[float], None] = time.sleep,
        session: requests.Session | None = None,
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._executor = executor
        self._services = services
        self._timeout = timeout
        self._backoff: Backoff = backoff or FixedBackoff()
        self._sleep = sleep
        self._session = session or requests.Session()

    def check(
        self, service: ServiceSpec, timeout: float | None = None, attempt: int = 1
    ) -> HealthVerdict:
        """Issue one probe for a service and classify it.

        Raises:
            ConfigError: If the service has no health check configured
        """
        timeout = timeout or self._timeout
        health = service.health
        if isinstance(health, HttpHealthCheck):
            if health.from_target:
                status, response = self._probe_http_on_target(health, timeout)
            else:
                status, response = self._probe_http(health, timeout)
        elif isinstance(health, ProcessHealthCheck):
            status, response = self._probe_process(service)
        else:
            raise ConfigError(
                "services.health", f"Service '{service.name}' has no health check"
            )
        return HealthVerdict(
            status=status, check=service.name, attempt=attempt, response=response
        )

    def check_with_retry(
        self,
        service: ServiceSpec,
        max_attempts: int,
        backoff: Backoff | None = None,
        timeout: float | None = None,
    ) -> HealthVerdict:
        """Probe until healthy or ``max_attempts`` are used up.

        Returns:
            The first healthy verdict, otherwise the last verdict observed
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        backoff = backoff or self._backoff

        verdict = self.check(service, timeout=timeout, attempt=1)
        attempt = 1
        while True:
            logger.info(
                f"Health check {service.name} attempt {attempt}/{max_attempts}: "
                f"{verdict.status.value}"
            )
            if verdict.healthy or attempt >= max_attempts:
                return verdict
            delay = backoff(attempt)
            if delay > 0:
                logger.debug(f"Waiting {delay:g}s before retrying {service.name}")
                self._sleep(delay)
            attempt += 1
            verdict = self.check(service, timeout=timeout, attempt=attempt)

    def _probe_http(
        self, health: HttpHealthCheck, timeout: float
    ) -> tuple[HealthStatus, str]:
        try:
            response = self._session.get(health.url, timeout=timeout)
        except (RequestsConnectionError, Timeout) as exc:
            return HealthStatus.UNREACHABLE, str(exc)
        except RequestException as exc:
            return HealthStatus.UNHEALTHY, str(exc)
        return classify_http(health, response.status_code, response.text)

    def _probe_http_on_target(
        self, health: HttpHealthCheck, timeout: float
    ) -> tuple[HealthStatus, str]:
        command = (
            f"curl -sS --max-time {timeout:g} -w '\\n%{{http_code}}' "
            f"{shlex.quote(health.url)}"
        )
        try:
            result = self._executor.execute(command, timeout=timeout + 5, check=False)
        except TransportError as exc:
            return HealthStatus.UNREACHABLE, exc.message
        if result.exit_code in CURL_UNREACHABLE_CODES:
            return HealthStatus.UNREACHABLE, result.stderr.strip()
        if not result.ok:
            return HealthStatus.UNHEALTHY, result.stderr.strip()
        body, _, code = result.stdout.rpartition("\n")
        try:
            status_code = int(code.strip())
        except ValueError:
            return HealthStatus.UNHEALTHY, result.stdout[:_BODY_EXCERPT]
        return classify_http(health, status_code, body)

    def _probe_process(self, service: ServiceSpec) -> tuple[HealthStatus, str]:
        try:
            state = self._services.status(service.name)
        except TransportError as exc:
            return HealthStatus.UNREACHABLE, exc.message
        if state == ServiceState.RUNNING:
            return HealthStatus.HEALTHY, state.value
        return HealthStatus.UNHEALTHY, state.value


def classify_http(
    health: HttpHealthCheck, status_code: int, body: str
) -> tuple[HealthStatus, str]:
    """Classify an HTTP response from a health endpoint.

    A 2xx is healthy unless ``expect_status`` is set, in which case the JSON
    body's status field must match it.
    """
    excerpt = f"HTTP {status_code}: {body[:_BODY_EXCERPT]}"
    if not 200 <= status_code < 300:
        return HealthStatus.UNHEALTHY, excerpt
    if health.expect_status is None:
        return HealthStatus.HEALTHY, excerpt
    try:
        payload = json.loads(body)
    except json.JSONDecodeError:
        return HealthStatus.UNHEALTHY, excerpt
    if isinstance(payload, dict) and str(payload.get(health.status_field)) == (
        health.expect_status
    ):
        return HealthStatus.HEALTHY, excerpt
    return HealthStatus.UNHEALTHY, excerpt
