"""Validation functions."""

import json
from enum import Enum
from typing import TypeVar

from subkeeper.core.exceptions import ValidationError

E = TypeVar("E", bound=Enum)


def parse_enum(enum_cls: type[E], value: str | None, field: str) -> E | None:
    """
    Parse a case-insensitive enum value from a query or body field.

    Args:
        enum_cls: The enum class to parse into.
        value: Raw string value, or None.
        field: Field name used in the error message.

    Returns:
        The enum member, or None if value is empty.

    Raises:
        ValidationError: If the value is not a member of the enum.
    """
    if value is None or not str(value).strip():
        return None

    normalised = str(value).strip().lower()
    for member in enum_cls:
        if member.value == normalised or member.name.lower() == normalised:
            return member

    raise ValidationError(
        f"Invalid {field}: {value}. "
        f"Valid options: {[member.value for member in enum_cls]}"
    )


def validate_result_payload(result: dict | None) -> None:
    """
    Validate a task result is a JSON serialisable dict.

    Args:
        result: Dict returned by an execution body.

    Raises:
        ValidationError: If not a dict or not JSON serialisable.
    """
    if result is None:
        return

    if not isinstance(result, dict):
        raise ValidationError("Task result must be a dict")

    try:
        json.dumps(result)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Task result must be JSON serialisable: {e}") from e
