"""Read-only CLI commands: snapshots and history."""

from __future__ import annotations

import json

import click

from hostdeploy.cli.errors import handle_cli_errors
from hostdeploy.config.loader import load_deploy_config
from hostdeploy.deploy.history import get_history_path, recent_outcomes
from hostdeploy.deploy.orchestrator import build_orchestrator
from hostdeploy.lib.logging_config import setup_logging


def format_size(size_bytes: int) -> str:
    """Render a byte count the way ``du -h`` does."""
    size = float(size_bytes)
    for unit in ("B", "K", "M", "G", "T"):
        if size < 1024 or unit == "T":
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size_bytes}B"


@click.command()
@click.argument("config_path", type=click.Path(), required=False, default=None)
@click.option("--limit", type=click.IntRange(min=1), default=None, help="Show at most N")
@click.option("--json", "as_json", is_flag=True, help="Print snapshots as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
def snapshots(
    config_path: str | None, limit: int | None, as_json: bool, verbose: bool
) -> None:
    """List the snapshots available on the target, newest first."""
    setup_logging(verbose=verbose, quiet=not verbose)

    with handle_cli_errors():
        config, _ = load_deploy_config(config_path)
        with build_orchestrator(config) as orchestrator:
            found = orchestrator.list_snapshots()
        if limit:
            found = found[:limit]

        if as_json:
            click.echo(json.dumps([s.model_dump(mode="json") for s in found], indent=2))
            return

        if not found:
            click.echo(f"No snapshots under {config.target.snapshot_root}")
            return

        click.secho(f"Snapshots for {config.target.identity}", bold=True)
        for snapshot in found:
            created = snapshot.created_at.strftime("%Y-%m-%d %H:%M:%S")
            click.echo(
                f"  {snapshot.id:<38} {snapshot.kind.value:<12} {created}"
                f"  {format_size(snapshot.size_bytes):>7}"
                f"  {snapshot.label or ''}"
            )


@click.command()
@click.argument("config_path", type=click.Path(), required=False, default=None)
@click.option("--limit", type=click.IntRange(min=1), default=10, show_default=True)
@click.option("--json", "as_json", is_flag=True, help="Print outcomes as JSON")
def history(config_path: str | None, limit: int, as_json: bool) -> None:
    """Show recent deploy and rollback outcomes for the target."""
    setup_logging(quiet=True)

    with handle_cli_errors():
        config, path = load_deploy_config(config_path)
        history_path = get_history_path(path, config.history)
        outcomes = recent_outcomes(history_path, target=config.target.name, limit=limit)

        if as_json:
            click.echo(
                json.dumps([o.model_dump(mode="json") for o in outcomes], indent=2)
            )
            return

        if not outcomes:
            click.echo(f"No runs recorded in {history_path}")
            return

        click.secho(f"Recent runs for {config.target.name}", bold=True)
        for outcome in outcomes:
            finished = outcome.finished_at.strftime("%Y-%m-%d %H:%M:%S")
            line = f"  {finished}  {outcome.operation.value:<8} {outcome.status.value:<18}"
            snapshot = outcome.backup_snapshot_id or outcome.rollback_snapshot_id
            if snapshot:
                line += f" {snapshot}"
            if outcome.failed_stage:
                line += f"  [{outcome.failed_stage.value}: {outcome.error_kind}]"
            click.echo(line)
