"""Stage bookkeeping shared by the deploy and rollback state machines."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from hostdeploy.deploy.lock import CancellationToken
from hostdeploy.lib.errors import DeploymentCancelledError, HostDeployError
from hostdeploy.lib.logging_config import get_logger
from hostdeploy.models.outcome import Stage, StageResult, StageStatus, utcnow

logger = get_logger(__name__)

UNEXPECTED_ERROR_KIND = "unexpected"


def describe_error(exc: BaseException) -> tuple[str, str]:
    """Return the ``(error_kind, message)`` pair recorded for an exception."""
    if isinstance(exc, HostDeployError):
        return exc.error_kind, getattr(exc, "message", str(exc))
    return UNEXPECTED_ERROR_KIND, f"{type(exc).__name__}: {exc}"


@dataclass
class StageContext:
    """Mutable details a stage body fills in while it runs."""

    detail: str = ""
    data: dict[str, Any] = field(default_factory=dict)


class StageRecorder:
    """Runs stages in order and keeps their results.

    The first failure is remembered; later stages (e.g., rollback) are still
    recorded but never replace it.
    """

    def __init__(self, cancel_token: CancellationToken | None = None) -> None:
        self._cancel_token = cancel_token
        self.results: list[StageResult] = []
        self.failed_stage: Stage | None = None
        self.error_kind: str | None = None
        self.error_message: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.cancelled

    @contextmanager
    def stage(self, stage: Stage, cancellable: bool = True) -> Iterator[StageContext]:
        """Record the block as one stage.

        Raises:
            DeploymentCancelledError: If the run was cancelled before the stage
        """
        started_at = utcnow()
        context = StageContext()
        if cancellable and self.cancelled:
            exc = DeploymentCancelledError(stage.value)
            self._record_failure(stage, exc, context, started_at)
            raise exc

        logger.info(f"Stage {stage.value}: started")
        try:
            yield context
        except Exception as exc:
            self._record_failure(stage, exc, context, started_at)
            raise

        logger.info(
            f"Stage {stage.value}: succeeded"
            + (f" ({context.detail})" if context.detail else "")
        )
        self.results.append(
            StageResult(
                stage=stage,
                status=StageStatus.SUCCEEDED,
                detail=context.detail,
                data=context.data,
                started_at=started_at,
            )
        )

    def skip(self, stage: Stage, detail: str) -> None:
        logger.info(f"Stage {stage.value}: skipped ({detail})")
        self.results.append(
            StageResult(stage=stage, status=StageStatus.SKIPPED, detail=detail)
        )

    def fail(self, stage: Stage, exc: BaseException, detail: str = "") -> None:
        """Record a failure that happened outside ``stage()``."""
        self._record_failure(stage, exc, StageContext(detail=detail), utcnow())

    def record(
        self,
        stage: Stage,
        status: StageStatus,
        detail: str = "",
        data: dict[str, Any] | None = None,
    ) -> None:
        """Append a result for a stage that ran outside ``stage()``."""
        self.results.append(
            StageResult(stage=stage, status=status, detail=detail, data=data or {})
        )

    def _record_failure(
        self,
        stage: Stage,
        exc: BaseException,
        context: StageContext,
        started_at: datetime,
    ) -> None:
        error_kind, message = describe_error(exc)
        if error_kind == UNEXPECTED_ERROR_KIND:
            logger.exception(f"Stage {stage.value}: unexpected error")
        else:
            logger.error(f"Stage {stage.value}: failed ({error_kind}): {message}")

        self.results.append(
            StageResult(
                stage=stage,
                status=StageStatus.FAILED,
                detail=context.detail,
                error_kind=error_kind,
                error_message=message,
                data=context.data,
                started_at=started_at,
            )
        )
        if self.failed_stage is None:
            self.failed_stage = stage
            self.error_kind = error_kind
            self.error_message = message
