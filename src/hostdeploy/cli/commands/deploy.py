"""CLI commands that change a target: deploy and rollback."""

from __future__ import annotations

import signal
import sys
import threading
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import click

from hostdeploy.cli.errors import EXIT_FAILED, handle_cli_errors
from hostdeploy.config.loader import load_deploy_config
from hostdeploy.deploy.history import append_outcome, get_history_path
from hostdeploy.deploy.lock import CancellationToken
from hostdeploy.deploy.orchestrator import build_orchestrator
from hostdeploy.lib.errors import HistoryError
from hostdeploy.lib.logging_config import get_logger, setup_logging
from hostdeploy.models.config import DeployConfig
from hostdeploy.models.outcome import DeploymentOutcome, OutcomeStatus, StageStatus
from hostdeploy.models.plan import DeploymentPlan

logger = get_logger(__name__)

CANCEL_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_STATUS_COLORS = {
    OutcomeStatus.SUCCEEDED: "green",
    OutcomeStatus.ROLLED_BACK: "yellow",
    OutcomeStatus.FAILED_NO_ROLLBACK: "red",
}


@contextmanager
def cancel_on_signals(token: CancellationToken) -> Generator[None, None, None]:
    """Turn SIGINT/SIGTERM into a cooperative cancellation of the run.

    The in-flight remote command finishes; the run stops before its next stage.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}; stopping after the current stage")
        token.cancel(name)

    previous = {sig: signal.signal(sig, _handler) for sig in CANCEL_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def record_history(config: DeployConfig, config_path: Path, outcome: DeploymentOutcome) -> None:
    """Append an outcome to the local ledger; failures are only logged."""
    if not config.history.enabled:
        return
    history_path = get_history_path(config_path, config.history)
    try:
        append_outcome(history_path, outcome, config.history.max_entries)
    except HistoryError as e:
        logger.warning(f"Could not record run history: {e.message}")


def display_outcome(outcome: DeploymentOutcome, as_json: bool, quiet: bool) -> None:
    """Print an outcome as JSON, a one-word status, or a summary."""
    if as_json:
        click.echo(outcome.model_dump_json(indent=2))
        return
    if quiet:
        click.echo(outcome.status.value)
        return

    color = _STATUS_COLORS[outcome.status]
    title = f"{outcome.operation.value.capitalize()} {outcome.status.value}"
    click.echo()
    click.secho("=" * 60, fg=color)
    click.secho(f"  {title}", fg=color, bold=True)
    click.secho("=" * 60, fg=color)
    click.echo(f"  Target:    {outcome.target}")
    if outcome.mode:
        click.echo(f"  Mode:      {outcome.mode.value}")
    if outcome.backup_snapshot_id:
        click.echo(f"  Backup:    {outcome.backup_snapshot_id}")
    if outcome.rollback_snapshot_id:
        click.echo(f"  Restored:  {outcome.rollback_snapshot_id}")
    if outcome.safety_snapshot_id:
        click.echo(f"  Safety:    {outcome.safety_snapshot_id}")
    if outcome.failed_stage:
        click.echo(f"  Failed at: {outcome.failed_stage.value} ({outcome.error_kind})")
        click.echo(f"  Error:     {outcome.error_message}")
    if outcome.pruned_snapshots:
        click.echo(f"  Pruned:    {', '.join(outcome.pruned_snapshots)}")

    click.echo()
    click.secho("  Stages:", bold=True)
    for result in outcome.stages:
        marker = {
            StageStatus.SUCCEEDED: click.style("ok", fg="green"),
            StageStatus.FAILED: click.style("FAILED", fg="red"),
            StageStatus.SKIPPED: click.style("skipped", fg="yellow"),
        }[result.status]
        detail = f" - {result.detail}" if result.detail else ""
        click.echo(f"    {result.stage.value:<22} {marker}{detail}")
    click.echo()


@click.command()
@click.argument("config_path", type=click.Path(), required=False, default=None)
@click.option("--backend-only", is_flag=True, help="Deploy only the backend")
@click.option("--frontend-only", is_flag=True, help="Deploy only the frontend")
@click.option(
    "--skip-backup",
    is_flag=True,
    help="Do not snapshot the current deployment (the run cannot be rolled back)",
)
@click.option(
    "--skip-health-check",
    is_flag=True,
    help="Treat the deployment as healthy without probing it",
)
@click.option(
    "--max-attempts",
    type=int,
    default=None,
    help="Health check attempts per service (default: from configuration)",
)
@click.option("--label", type=str, default=None, help="Label for the backup snapshot")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only print the final status")
def deploy(
    config_path: str | None,
    backend_only: bool,
    frontend_only: bool,
    skip_backup: bool,
    skip_health_check: bool,
    max_attempts: int | None,
    label: str | None,
    as_json: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Deploy the application to the configured target.

    CONFIG_PATH is the hostdeploy.yaml file (default: search the current
    directory). Exits 0 on success, 1 when the run failed or was rolled
    back, 2 on configuration errors.

    Example:

        hostdeploy deploy

        hostdeploy deploy production.yaml --backend-only --label v1.4.2
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_cli_errors():
        config, path = load_deploy_config(config_path)
        plan = DeploymentPlan.from_flags(
            backend_only=backend_only,
            frontend_only=frontend_only,
            skip_backup=skip_backup,
            skip_health_check=skip_health_check,
            max_health_attempts=(
                max_attempts if max_attempts is not None else config.health.max_attempts
            ),
            label=label,
        )

        token = CancellationToken()
        with build_orchestrator(config) as orchestrator, cancel_on_signals(token):
            outcome = orchestrator.deploy(plan, token)

        record_history(config, path, outcome)
        display_outcome(outcome, as_json, quiet)

    if not outcome.succeeded:
        sys.exit(EXIT_FAILED)


@click.command()
@click.argument("config_path", type=click.Path(), required=False, default=None)
@click.option(
    "--snapshot",
    "snapshot_id",
    type=str,
    default="latest",
    show_default=True,
    help="Snapshot id to restore, or 'latest' for the newest backup",
)
@click.option("--force", is_flag=True, help="Skip confirmation prompt")
@click.option("--json", "as_json", is_flag=True, help="Print the outcome as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only print the final status")
def rollback(
    config_path: str | None,
    snapshot_id: str,
    force: bool,
    as_json: bool,
    verbose: bool,
    quiet: bool,
) -> None:
    """Restore the target to a snapshot.

    The current deployment is snapshotted first, so a rollback can itself
    be undone by restoring the safety snapshot it reports.
    """
    setup_logging(verbose=verbose, quiet=quiet)

    with handle_cli_errors():
        config, path = load_deploy_config(config_path)

        if not force:
            confirm = click.confirm(
                f"Roll back {config.target.name} ({config.target.identity}) "
                f"to snapshot '{snapshot_id}'?",
                default=False,
            )
            if not confirm:
                click.secho("Rollback aborted.", fg="yellow")
                sys.exit(0)

        token = CancellationToken()
        with build_orchestrator(config) as orchestrator, cancel_on_signals(token):
            outcome = orchestrator.rollback(snapshot_id, token)

        record_history(config, path, outcome)
        display_outcome(outcome, as_json, quiet)

    if outcome.status != OutcomeStatus.ROLLED_BACK:
        sys.exit(EXIT_FAILED)
