"""Local ledger of finished runs.

The ledger is written after a run and read only by ``hostdeploy history``;
the orchestrator never consults it.
"""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import ValidationError

from hostdeploy.config.defaults import DEFAULT_HISTORY_MAX_ENTRIES, DEFAULT_HISTORY_PATH
from hostdeploy.lib.errors import HistoryError
from hostdeploy.models.config import HistoryConfig
from hostdeploy.models.history import RunHistory
from hostdeploy.models.outcome import DeploymentOutcome

HISTORY_VERSION = "1.0"


def get_history_path(config_path: Path, history: HistoryConfig | None = None) -> Path:
    """Return the ledger path for a configuration file.

    A relative configured path is resolved against the config file's directory.
    """
    configured = history.path if history and history.path else DEFAULT_HISTORY_PATH
    path = Path(configured).expanduser()
    if not path.is_absolute():
        path = config_path.parent / path
    return path


def load_history(history_path: Path) -> RunHistory:
    """Load the ledger, returning an empty one when the file does not exist."""
    if not history_path.exists():
        return RunHistory(version=HISTORY_VERSION)

    try:
        content = history_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise HistoryError(f"Failed to read run history at {history_path}: {exc}") from exc
    if not content.strip():
        return RunHistory(version=HISTORY_VERSION)

    try:
        return RunHistory.model_validate_json(content)
    except ValidationError as exc:
        raise HistoryError(f"Invalid run history format in {history_path}: {exc}") from exc


def save_history(history_path: Path, history: RunHistory) -> None:
    try:
        history_path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(history.model_dump(mode="json"), indent=2, sort_keys=True)
        history_path.write_text(payload, encoding="utf-8")
    except OSError as exc:
        raise HistoryError(
            f"Failed to write run history to {history_path}: {exc}"
        ) from exc


def append_outcome(
    history_path: Path,
    outcome: DeploymentOutcome,
    max_entries: int = DEFAULT_HISTORY_MAX_ENTRIES,
) -> RunHistory:
    """Append an outcome for its target, keeping the newest ``max_entries``."""
    history = load_history(history_path)
    entries = [*history.targets.get(outcome.target, []), outcome]
    history.targets[outcome.target] = entries[-max_entries:]
    save_history(history_path, history)
    return history


def recent_outcomes(
    history_path: Path, target: str | None = None, limit: int | None = None
) -> list[DeploymentOutcome]:
    """Return recorded outcomes, newest first, optionally for one target."""
    history = load_history(history_path)
    if target is not None:
        outcomes = list(history.targets.get(target, []))
    else:
        outcomes = [o for entries in history.targets.values() for o in entries]
    outcomes.sort(key=lambda o: o.finished_at, reverse=True)
    return outcomes[:limit] if limit else outcomes
