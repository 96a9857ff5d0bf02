"""Generic helper functions."""

import tomllib
from datetime import UTC, datetime
from pathlib import Path

_pyproject_data: dict | None = None


def _get_pyproject() -> dict:
    """Load and cache pyproject.toml data."""
    global _pyproject_data
    if _pyproject_data is None:
        pyproject_path = Path(__file__).parent.parent.parent / "pyproject.toml"
        with open(pyproject_path, "rb") as f:
            _pyproject_data = tomllib.load(f)
    return _pyproject_data


def _get_pyproject_attr(key: str, default: str = "unknown") -> str:
    """
    Get an attribute from pyproject.toml [project] section.

    Args:
        key: The attribute name to retrieve.
        default: Default value if attribute not found.

    Returns:
        The attribute value or default.
    """
    try:
        return _get_pyproject()["project"].get(key, default)
    except Exception:
        return default


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, matching what the database stores."""
    return datetime.now(UTC).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    """ISO-8601 string for a datetime, or None."""
    return value.isoformat() if value else None


def clamp_percentage(value: float | int) -> int:
    """
    Clamp a progress value into the 0-100 range.

    Args:
        value: Raw progress value, possibly fractional or out of range.

    Returns:
        Integer percentage between 0 and 100 inclusive.
    """
    return max(0, min(100, int(value)))


def format_bytes(size: int) -> str:
    """
    Format a byte count for log messages.

    Args:
        size: Number of bytes.

    Returns:
        Human readable size such as "1.5 MB".
    """
    value = float(size)
    if value < 1024:
        return f"{int(value)} B"
    for unit in ("KB", "MB", "GB", "TB"):
        value /= 1024
        if value < 1024 or unit == "TB":
            break
    return f"{value:.1f} {unit}"
