"""Input coercion shared by the API, the importer and the Notion engine."""

import math
import re
from typing import Any, Optional

UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)
# RFC 4122 versions 1-5 only
STRICT_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$", re.IGNORECASE
)
COMPACT_UUID_PATTERN = re.compile(r"^[0-9a-f]{32}$", re.IGNORECASE)

PROJECT_NAME_MAX = 120
TASK_TITLE_MAX = 500
UNTITLED_PROJECT = "Untitled project"
UNTITLED_TASK = "Untitled task"


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(STRICT_UUID_PATTERN.match(value.strip()))


def to_string_value(value: Any) -> str:
    """Cell value as trimmed text; None becomes ""."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def empty_to_null(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, str) and not value.strip():
        return None
    return value


def parse_uuid(value: Any) -> Optional[str]:
    """Canonical lowercase id, or None when ``value`` is not id-shaped."""
    text = to_string_value(value)
    if not text or not UUID_PATTERN.match(text):
        return None
    return text.lower()


def parse_integer(value: Any) -> Optional[int]:
    """Integer from a number or numeric string, truncating fractions."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return math.trunc(value) if math.isfinite(value) else None
    text = str(value).strip()
    if not text:
        return None
    try:
        number = float(text)
    except ValueError:
        return None
    return math.trunc(number) if math.isfinite(number) else None


def parse_boolean(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("true", "1"):
            return True
        if text in ("false", "0"):
            return False
    return None


def normalize_project_name(value: Any) -> str:
    text = to_string_value(value)
    return (text or UNTITLED_PROJECT)[:PROJECT_NAME_MAX]


def normalize_task_title(value: Any) -> str:
    text = to_string_value(value)
    return (text or UNTITLED_TASK)[:TASK_TITLE_MAX]


def normalize_lookup(value: Any) -> str:
    """Key for case-insensitive, trimmed name comparisons."""
    return to_string_value(value).lower()


def validate_notion_token(value: str) -> str:
    token = (value or "").strip()
    if len(token) < 10 or len(token) > 200:
        raise ValueError("Notion token must be between 10 and 200 characters.")
    if any(ch.isspace() for ch in token):
        raise ValueError("Notion token must not contain whitespace.")
    return token


def normalize_notion_database_id(value: str) -> str:
    """Lowercase dashed 8-4-4-4-12 form of a Notion database id."""
    text = (value or "").strip()
    compact = text.replace("-", "")
    if not COMPACT_UUID_PATTERN.match(compact) or (text != compact and not UUID_PATTERN.match(text)):
        raise ValueError("Notion database id must be a UUID.")
    compact = compact.lower()
    return f"{compact[:8]}-{compact[8:12]}-{compact[12:16]}-{compact[16:20]}-{compact[20:]}"
