# src/sender_aggregator/normalizer.py

"""
Turns one raw Gmail message resource into a ``NormalizedRecord``.

Malformed messages never raise out of ``normalize``; they are logged at debug
level and skipped, so a single bad message cannot abort a scan cycle.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Mapping

import pydantic

from .schemas import GmailMessage
from .security import clean_header_text

logger = logging.getLogger(__name__)

_ANGLE_ADDRESS = re.compile(r"<([^>]+)>")
_BARE_ADDRESS = re.compile(r"[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}", re.IGNORECASE | re.ASCII)
_EDGE_QUOTES = re.compile(r"^[(\"'\s]+|[)\"'\s]+$")
_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_MAILTO = re.compile(r"^mailto:", re.IGNORECASE)

# Addresses are ASCII, so this also bounds the index sort key in bytes.
ADDRESS_MAX_LENGTH = 320


@dataclass(frozen=True, slots=True)
class NormalizedRecord:
    key: str
    address: str
    name: str | None
    subject: str
    timestamp: str | None
    unsubscribe_url: str | None = None
    unsubscribe_mailto: str | None = None


def parse_from(raw_from: str) -> tuple[str | None, str | None]:
    """
    Extracts ``(address, display_name)`` from a free-text originator field.

    The ``Name <addr>`` form is tried first, then a bare address anywhere in
    the text. The address is case-folded; a missing name is ``None``.

    Examples:
        >>> parse_from('"ACME News" <News@Acme.com>')
        ("news@acme.com", "ACME News")

        >>> parse_from("news@acme.com (ACME News)")
        ("news@acme.com", "ACME News")
    """
    if not raw_from:
        return None, None

    address = None
    name = ""

    angle = _ANGLE_ADDRESS.search(raw_from)
    if angle and _BARE_ADDRESS.fullmatch(angle.group(1).strip()):
        address = angle.group(1).strip()
        name = _strip_one_quote(raw_from.replace(angle.group(0), "").strip())
    else:
        bare = _BARE_ADDRESS.search(raw_from)
        if bare:
            address = bare.group(0).strip()
            name = _EDGE_QUOTES.sub("", raw_from.replace(bare.group(0), "").strip())

    if not address or len(address) > ADDRESS_MAX_LENGTH:
        return None, None

    name = clean_header_text(_strip_one_quote(name))
    return address.lower(), name or None


def _strip_one_quote(text: str) -> str:
    """Removes at most one double quote from each end."""
    if text.startswith('"'):
        text = text[1:]
    if text.endswith('"'):
        text = text[:-1]
    return text


def parse_list_unsubscribe(header_value: str) -> tuple[str | None, str | None]:
    """
    Parses a ``List-Unsubscribe`` header into ``(url, mailto)``.

    The header is a comma-separated list of ``<...>`` tokens; the first
    http(s) token and the first mailto token win.
    """
    if not header_value:
        return None, None

    url = None
    mailto = None
    for part in header_value.split(","):
        token = part.strip()
        if token.startswith("<"):
            token = token[1:]
        if token.endswith(">"):
            token = token[:-1]
        token = token.strip()
        if _HTTP_URL.match(token):
            url = url or token
        elif _MAILTO.match(token):
            mailto = mailto or token
    return url, mailto


def normalize_timestamp(internal_date_ms: int | None, date_header: str = "") -> str | None:
    """
    Returns an ISO-8601 UTC timestamp with second precision.

    Every timestamp shares the ``+00:00`` offset so they compare correctly
    as plain strings. Gmail's ``internalDate`` is preferred; the ``Date``
    header is the fallback.
    """
    moment = None
    if internal_date_ms is not None and internal_date_ms > 0:
        try:
            moment = datetime.fromtimestamp(internal_date_ms / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            moment = None

    if moment is None and date_header:
        try:
            moment = parsedate_to_datetime(date_header)
        except (TypeError, ValueError, IndexError):
            return None
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=timezone.utc)

    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds")


def normalize(
    raw_message: Mapping[str, Any],
    required_label: str | None = "INBOX",
) -> NormalizedRecord | None:
    """
    Normalizes one raw message, or returns None when it must be skipped:
    it fails validation, lacks *required_label*, or has no sender address.
    """
    try:
        message = GmailMessage.model_validate(raw_message)
    except pydantic.ValidationError as e:
        logger.debug(
            "Skipping malformed message.",
            extra={"validation_errors": e.error_count()},
        )
        return None

    if required_label and required_label not in message.label_ids:
        return None

    address, name = parse_from(message.header("From"))
    if not address:
        logger.debug("Skipping message without sender address.", extra={"message_id": message.id})
        return None

    url, mailto = parse_list_unsubscribe(message.header("List-Unsubscribe"))

    return NormalizedRecord(
        key=address,
        address=address,
        name=name,
        subject=clean_header_text(message.header("Subject")),
        timestamp=normalize_timestamp(message.internal_date, message.header("Date")),
        unsubscribe_url=url,
        unsubscribe_mailto=mailto,
    )
