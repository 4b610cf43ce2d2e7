"""Error presentation shared by CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Generator
from contextlib import contextmanager

import click

from hostdeploy.lib.errors import (
    AlreadyInProgressError,
    ConfigError,
    HostDeployError,
    PlanError,
)
from hostdeploy.lib.logging_config import get_logger

logger = get_logger(__name__)

EXIT_FAILED = 1
EXIT_CONFIG = 2


@contextmanager
def handle_cli_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in CLI commands.

    Exit codes:
        1: Failed run, lock conflict or unexpected error
        2: Configuration or plan error
    """
    try:
        yield
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG)
    except PlanError as e:
        logger.error(f"Invalid plan: {e}")
        click.secho("Error: Invalid deployment plan", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_CONFIG)
    except AlreadyInProgressError as e:
        logger.error(str(e))
        click.secho("Error: Deployment already in progress", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(EXIT_FAILED)
    except HostDeployError as e:
        logger.error(f"{e.error_kind}: {e}")
        click.secho(f"Error: {e.error_kind}", fg="red", err=True)
        click.echo(f"  {getattr(e, 'message', e)}", err=True)
        sys.exit(EXIT_FAILED)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
