"""Connection id and name helpers used when saving or editing profiles."""

from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence
from urllib.parse import quote

from .models import DBType

if TYPE_CHECKING:
    from .registry import ConnectionInfo

ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
ID_MIN_LENGTH = 8
ID_MAX_LENGTH = 50
NAME_MAX_LENGTH = 100
_INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*]')
_GENERIC_NAME = re.compile(r"^(connection|database|db)\s*\d*$", re.IGNORECASE)
_ID_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_-"
_ID_SIZE = 21
_MAX_ID_ATTEMPTS = 10
_MAX_SUFFIX = 100


@dataclass(frozen=True, slots=True)
class ValidationResult:
    is_valid: bool
    error: str | None = None
    suggestion: str | None = None


def generate_connection_id(size: int = _ID_SIZE) -> str:
    """Random URL-safe id."""

    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(size))


def generate_unique_connection_id(existing: Sequence[ConnectionInfo]) -> str:
    taken = {conn.id for conn in existing}
    for _ in range(_MAX_ID_ATTEMPTS):
        candidate = generate_connection_id()
        if candidate not in taken:
            return candidate
    return f"conn_{int(time.time() * 1000)}_{generate_connection_id(6)}"


def validate_connection_id(value: str) -> ValidationResult:
    if not value or not isinstance(value, str):
        return ValidationResult(False, "Connection ID must be a non-empty string")
    if len(value) < ID_MIN_LENGTH:
        return ValidationResult(False, f"Connection ID must be at least {ID_MIN_LENGTH} characters long")
    if len(value) > ID_MAX_LENGTH:
        return ValidationResult(False, f"Connection ID must be less than {ID_MAX_LENGTH} characters long")
    if not ID_PATTERN.match(value):
        return ValidationResult(
            False, "Connection ID can only contain letters, numbers, hyphens, and underscores"
        )
    return ValidationResult(True)


def name_format_error(value: str) -> str | None:
    """Structural name checks shared with the registry schema."""

    if not value or not isinstance(value, str):
        return "Connection name must be a non-empty string"
    trimmed = value.strip()
    if not trimmed:
        return "Connection name cannot be empty"
    if len(trimmed) > NAME_MAX_LENGTH:
        return f"Connection name must be less than {NAME_MAX_LENGTH} characters long"
    if _INVALID_NAME_CHARS.search(trimmed):
        return "Connection name contains invalid characters"
    return None


def validate_connection_name(value: str) -> ValidationResult:
    error = name_format_error(value)
    if error:
        return ValidationResult(False, error)
    if _GENERIC_NAME.match(value.strip()):
        return ValidationResult(False, "Connection name is too generic, please be more descriptive")
    return ValidationResult(True)


def is_connection_name_unique(
    name: str,
    existing: Sequence[ConnectionInfo],
    exclude_id: str | None = None,
) -> bool:
    if not name or not isinstance(name, str):
        return False
    wanted = name.strip().lower()
    return not any(
        conn.id != exclude_id and conn.name.strip().lower() == wanted for conn in existing
    )


def generate_unique_connection_name(
    base_name: str,
    db_type: DBType,
    existing: Sequence[ConnectionInfo],
    exclude_id: str | None = None,
) -> str:
    if not validate_connection_name(base_name).is_valid:
        base_name = f"{DBType(db_type).label} Database"
    base_name = base_name.strip()
    if is_connection_name_unique(base_name, existing, exclude_id):
        return base_name
    for suffix in range(2, _MAX_SUFFIX + 1):
        candidate = f"{base_name} ({suffix})"
        if is_connection_name_unique(candidate, existing, exclude_id):
            return candidate
    return f"{base_name} ({int(time.time() * 1000)}-{secrets.randbelow(1000)})"


def ensure_unique_id(value: str, existing: Sequence[ConnectionInfo]) -> str:
    """Keep ``value`` when valid and free, otherwise suffix or regenerate it."""

    if not validate_connection_id(value).is_valid:
        return generate_unique_connection_id(existing)
    taken = {conn.id for conn in existing}
    if value not in taken:
        return value
    for suffix in range(1, _MAX_SUFFIX):
        candidate = f"{value}_{suffix}"
        if len(candidate) > ID_MAX_LENGTH:
            break
        if candidate not in taken:
            return candidate
    return generate_unique_connection_id(existing)


def find_connection_by_id(value: str, existing: Sequence[ConnectionInfo]) -> ConnectionInfo | None:
    if not value:
        return None
    return next((conn for conn in existing if conn.id == value), None)


def find_connection_by_name(value: str, existing: Sequence[ConnectionInfo]) -> ConnectionInfo | None:
    if not value:
        return None
    wanted = value.strip().lower()
    return next((conn for conn in existing if conn.name.strip().lower() == wanted), None)


def validate_connection_name_complete(
    name: str,
    existing: Sequence[ConnectionInfo],
    exclude_id: str | None = None,
) -> ValidationResult:
    """Format check followed by a uniqueness check with a suggested alternative."""

    result = validate_connection_name(name)
    if not result.is_valid:
        return result
    if is_connection_name_unique(name, existing, exclude_id):
        return result
    clash = find_connection_by_name(name, existing)
    db_type = clash.type if clash is not None else DBType.POSTGRESQL
    return ValidationResult(
        False,
        f'A connection with the name "{name.strip()}" already exists',
        generate_unique_connection_name(name, db_type, existing, exclude_id),
    )


def build_connection_string(
    db_type: DBType,
    *,
    host: str | None = None,
    port: int | None = None,
    database: str | None = None,
    user: str | None = None,
    password: str | None = None,
) -> str:
    """Assemble a connection string from individual parts."""

    db_type = DBType(db_type)
    if db_type is DBType.SQLITE:
        path = database or host
        if not path:
            raise ValueError("SQLite connections need a file path.")
        return path
    scheme, default_port = {
        DBType.POSTGRESQL: ("postgresql", 5432),
        DBType.MYSQL: ("mysql", 3306),
    }[db_type]
    credentials = ""
    if user:
        credentials = quote(user, safe="")
        if password:
            credentials += f":{quote(password, safe='')}"
        credentials += "@"
    return f"{scheme}://{credentials}{host or 'localhost'}:{port or default_port}/{database or ''}"


__all__ = [
    "ValidationResult",
    "build_connection_string",
    "ensure_unique_id",
    "find_connection_by_id",
    "find_connection_by_name",
    "generate_connection_id",
    "generate_unique_connection_id",
    "generate_unique_connection_name",
    "is_connection_name_unique",
    "name_format_error",
    "validate_connection_id",
    "validate_connection_name",
    "validate_connection_name_complete",
]
