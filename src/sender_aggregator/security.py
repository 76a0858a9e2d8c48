"""
Security utilities for the Sender Aggregator service.

This module sanitizes values that cross a trust boundary before they are used
as storage keys or shown to a human:

- Owner ids become DynamoDB partition keys and S3 report key segments, so they
  must not carry path separators, traversal sequences or invisible characters.
- Header text (subjects, display names) comes from arbitrary senders and is
  stripped of control and invisible characters before it is stored.
- Report cells are exported to spreadsheets, where a leading '=', '+', '-' or
  '@' turns a cell into a formula.
"""

import re
import unicodedata
import urllib.parse

from .exceptions import InvalidOwnerIdError

# Module-level constants for improved performance
_INVALID_CONTROL_CHARS: set[int] = set(range(0x00, 0x20)) | {0x7F}  # includes DEL

_UNICODE_INVISIBLES: set[int] = {
    # Zero-width characters
    0x200B,  # Zero Width Space
    0x200C,  # Zero Width Non-Joiner
    0x200D,  # Zero Width Joiner
    0xFEFF,  # Zero Width No-Break Space (BOM)

    # Directional override characters
    0x202E,  # Right-to-Left Override
    0x202D,  # Left-to-Right Override
    0x202C,  # Pop Directional Formatting

    # Line/paragraph separators
    0x2028,  # Line Separator
    0x2029,  # Paragraph Separator
}

_OWNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9@._+=:-]+$")
_OWNER_ID_MAX_BYTES = 256

_WHITESPACE_RUN = re.compile(r"\s+")
_FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")

DEFAULT_TEXT_LIMIT = 500


def sanitize_owner_id(owner_id: str) -> str:
    """
    Validate an owner id before it is used as a storage key.

    Owner ids scope every stored item and the S3 report path. The check is
    strict rather than normalizing: an id that needs rewriting is rejected, so
    two different inputs can never collapse onto the same partition.

    Args:
        owner_id: The raw owner id from the invocation event.

    Returns:
        The owner id, unchanged.

    Raises:
        InvalidOwnerIdError: If the id is empty, too long, or contains unsafe
            characters or sequences.

    Examples:
        >>> sanitize_owner_id("alice@example.com")
        "alice@example.com"

        >>> sanitize_owner_id("../other-user")
        InvalidOwnerIdError: Owner id contains path traversal...
    """
    if not isinstance(owner_id, str):
        raise InvalidOwnerIdError(
            "Owner id is not a valid string",
            context={"owner_id": owner_id, "type": type(owner_id).__name__},
        )

    if not owner_id:
        raise InvalidOwnerIdError("Owner id is empty")

    if len(owner_id.encode("utf-8")) > _OWNER_ID_MAX_BYTES:
        raise InvalidOwnerIdError(
            "Owner id exceeds byte length limit",
            context={"owner_id_length": len(owner_id.encode("utf-8"))},
        )

    if any(ord(c) in _INVALID_CONTROL_CHARS for c in owner_id):
        raise InvalidOwnerIdError(
            "Owner id contains invalid control characters",
            context={"owner_id": owner_id},
        )

    for char in owner_id:
        if ord(char) in _UNICODE_INVISIBLES or unicodedata.category(char) == "Cf":
            raise InvalidOwnerIdError(
                "Owner id contains invalid Unicode invisible characters",
                context={"owner_id": owner_id, "char_code": hex(ord(char))},
            )

    # Nested URL encoding must not smuggle separators past the pattern check.
    decoded = owner_id
    for _ in range(5):
        new_decoded = urllib.parse.unquote(decoded)
        if new_decoded == decoded:
            break
        decoded = new_decoded

    if ".." in decoded or "/" in decoded or "\\" in decoded:
        raise InvalidOwnerIdError(
            "Owner id contains path traversal or separator characters",
            context={"owner_id": owner_id},
        )

    if not _OWNER_ID_PATTERN.match(owner_id):
        raise InvalidOwnerIdError(
            "Owner id contains unsupported characters",
            context={"owner_id": owner_id},
        )

    return owner_id


def clean_header_text(value: str | None, max_length: int = DEFAULT_TEXT_LIMIT) -> str:
    """
    Strip control and invisible characters from a header-derived string,
    collapse whitespace runs (folded headers) and cap the length.
    """
    if not value:
        return ""

    kept = []
    for char in value:
        code = ord(char)
        if code in _INVALID_CONTROL_CHARS:
            # Tabs and folded newlines become spaces, everything else is dropped.
            if char in "\t\r\n":
                kept.append(" ")
            continue
        if code in _UNICODE_INVISIBLES or unicodedata.category(char) == "Cf":
            continue
        kept.append(char)

    cleaned = _WHITESPACE_RUN.sub(" ", "".join(kept)).strip()
    return cleaned[:max_length]


def neutralize_formula(value: str) -> str:
    """Prefix a cell value that a spreadsheet would evaluate as a formula."""
    if value and value.startswith(_FORMULA_PREFIXES):
        return "'" + value
    return value
