"""Name validation, root sentinel handling, tags, paging helpers."""

from __future__ import annotations

import json
import math
import mimetypes
import posixpath
import re
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from .exceptions import ValidationError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

T = TypeVar("T")

MAX_NAME_LENGTH = 255

# Legacy rows may mark top-level entries with any of these instead of NULL.
LEGACY_ROOT_TOKENS = ("", "root")

COLOR_RE = re.compile(r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$")

# Reserved filenames (Windows compatibility)
RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    "COM1", "COM2", "COM3", "COM4", "COM5", "COM6", "COM7", "COM8", "COM9",
    "LPT1", "LPT2", "LPT3", "LPT4", "LPT5", "LPT6", "LPT7", "LPT8", "LPT9",
}


def normalize_parent_id(parent_id: str | None) -> str | None:
    """Map every spelling of "no parent" to ``None``.

    ``None``, ``""`` and ``"root"`` all mean the top level. Ids are
    stripped of surrounding whitespace.
    """
    if parent_id is None:
        return None
    parent_id = parent_id.strip()
    if parent_id in LEGACY_ROOT_TOKENS:
        return None
    return parent_id


def validate_name(name: str) -> tuple[bool, str]:
    """Validate a folder or file name.

    Returns:
        (is_valid, error_message) - error_message is empty if valid
    """
    if not name or not name.strip():
        return False, "Name must not be empty"

    if name != name.strip():
        return False, "Name must not start or end with whitespace"

    if len(name) > MAX_NAME_LENGTH:
        return False, f"Name too long (max {MAX_NAME_LENGTH} characters)"

    if "/" in name or "\\" in name:
        return False, "Name must not contain path separators"

    if name in (".", ".."):
        return False, f"Reserved name: {name}"

    if "\x00" in name:
        return False, "Name contains null bytes"

    for ch in name:
        code = ord(ch)
        if 0x01 <= code <= 0x1F:
            return False, f"Name contains control character: 0x{code:02x}"

    base_name = name.upper().split(".")[0]
    if base_name in RESERVED_NAMES:
        return False, f"Reserved name: {name}"

    return True, ""


def require_valid_name(name: str) -> str:
    """Return *name* unchanged, raising ``ValidationError`` if it is invalid."""
    valid, error = validate_name(name)
    if not valid:
        raise ValidationError(error)
    return name


def require_valid_color(color: str | None) -> str | None:
    if color is None:
        return None
    if not COLOR_RE.match(color):
        raise ValidationError(f"Invalid color: {color!r}. Expected #RGB or #RRGGBB.")
    return color


def split_extension(name: str) -> str:
    """Return the lower-cased extension of *name* without the dot."""
    _, ext = posixpath.splitext(name)
    return ext[1:].lower() if ext else ""


def guess_mime_type(filename: str) -> str:
    """Guess the MIME type of a file based on its name."""
    mime, _ = mimetypes.guess_type(filename)
    return mime or "application/octet-stream"


def merge_tags(current: Sequence[str], added: Sequence[str]) -> list[str]:
    """Append *added* tags not already present, compared case-insensitively."""
    result = list(current)
    seen = {t.lower() for t in result}
    for tag in added:
        tag = tag.strip()
        if tag and tag.lower() not in seen:
            result.append(tag)
            seen.add(tag.lower())
    return result


def drop_tags(current: Sequence[str], removed: Sequence[str]) -> list[str]:
    """Remove *removed* tags, compared case-insensitively."""
    doomed = {t.strip().lower() for t in removed}
    return [t for t in current if t.lower() not in doomed]


def dump_tags(tags: Sequence[str]) -> str:
    """Serialize tags with non-ASCII characters kept as-is so LIKE can see them."""
    return json.dumps(list(tags), ensure_ascii=False)


def escape_like(value: str) -> str:
    """Escape SQL LIKE wildcards so *value* matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def clamp_page(page: int, limit: int | None, default_limit: int, max_limit: int) -> tuple[int, int]:
    """Return a 1-based page and a limit within ``1..max_limit``."""
    page = max(page, 1)
    if limit is None:
        limit = default_limit
    limit = min(max(limit, 1), max_limit)
    return page, limit


def paginate(items: Sequence[T], page: int, limit: int) -> tuple[list[T], int, int, bool]:
    """Slice one page from *items*.

    Returns:
        (page_items, total, total_pages, has_more)
    """
    total = len(items)
    start = (page - 1) * limit
    page_items = list(items[start : start + limit])
    total_pages = math.ceil(total / limit) if total else 0
    has_more = start + len(page_items) < total
    return page_items, total, total_pages, has_more


def sort_key_for(sort_by: str) -> Callable[[object], object]:
    """Return a key function for the named sort field.

    Names sort case-insensitively; missing timestamps sort first.
    """
    if sort_by == "name":
        return lambda item: (getattr(item, "name", "").lower(), getattr(item, "id", ""))
    if sort_by == "size":
        return lambda item: (getattr(item, "size", 0), getattr(item, "id", ""))
    if sort_by in ("created_at", "updated_at"):
        floor = datetime.min.replace(tzinfo=UTC)
        return lambda item: (as_utc(getattr(item, sort_by, None)) or floor, getattr(item, "id", ""))
    raise ValidationError(
        f"Invalid sort field: {sort_by!r}. Must be one of name, size, created_at, updated_at."
    )
