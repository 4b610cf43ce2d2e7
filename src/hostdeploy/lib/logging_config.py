"""Logging setup for hostdeploy.

Deployment runs are usually driven by an unattended CI job, so log records go
to stderr and stdout is left free for machine-readable output (``--json``).
"""

from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Chatty third-party loggers, silenced unless running verbose
NOISY_LOGGERS = ("paramiko", "urllib3", "requests")


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the hostdeploy package logger."""
    if name == "hostdeploy" or name.startswith("hostdeploy."):
        return logging.getLogger(name)
    return logging.getLogger(f"hostdeploy.{name}")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the hostdeploy logger hierarchy.

    Args:
        verbose: Enable DEBUG output, including every remote command
        quiet: Only report errors
    """
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.ERROR
    else:
        level = logging.INFO

    root = logging.getLogger("hostdeploy")
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.DEBUG if verbose else logging.WARNING)
