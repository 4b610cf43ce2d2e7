"""Validation utilities for hostdeploy configuration."""

from __future__ import annotations

from collections.abc import Sequence

from pydantic import ValidationError as PydanticValidationError


def format_location(loc: Sequence[int | str]) -> str:
    """Render a pydantic error location as a config path.

    Example:
        >>> format_location(("services", 0, "health", "url"))
        'services[0].health.url'
    """
    path = ""
    for item in loc:
        if isinstance(item, int):
            path += f"[{item}]"
        elif path:
            path += f".{item}"
        else:
            path = str(item)
    return path or "unknown"


def flatten_pydantic_errors(exc: PydanticValidationError) -> list[str]:
    """Flatten a pydantic ValidationError into one message per field.

    Discriminated-union tags (``http``/``process``) are dropped from the path
    so the message points at the key the user actually wrote.

    Args:
        exc: Pydantic ValidationError exception

    Returns:
        List of human-readable error messages
    """
    errors: list[str] = []

    for error in exc.errors():
        loc = [
            item for item in error.get("loc", ()) if item not in ("http", "process")
        ]
        field_path = format_location(loc)
        msg = error.get("msg", "Unknown error")
        error_type = error.get("type", "")

        if error_type == "missing":
            errors.append(f"Field '{field_path}': required field is missing")
        elif error_type == "extra_forbidden":
            errors.append(f"Field '{field_path}': unknown field")
        elif error_type == "value_error":
            errors.append(
                f"Field '{field_path}': {msg} (received: {error.get('input')!r})"
            )
        else:
            errors.append(f"Field '{field_path}': {msg}")

    return errors if errors else ["Validation failed with unknown error"]
