"""Label-based extraction of forwarded-mail metadata from plain-text bodies.

Forwarding rules write the original sender and send time into the body as
``label: value`` lines.  Some clients re-markup quoted text, so every label
is accepted both plain and wrapped in one or two ``*`` emphasis markers::

    転送元の名前: Taro Yamada
    **転送元アドレス:** taro@example.com
    *日時:* 2024年1月5日(金) 10:00

Each field is described by an ordered tuple of patterns; the first pattern
that matches decides the value.  Plain forms are tried before emphasis forms.
None of the functions here raise — a field that cannot be found is ``None``.
"""

import logging
import re
from datetime import datetime, tzinfo

from dateutil import parser as date_parser
from dateutil import tz

from inbox_router.processing.types import ExtractedFields

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 50
PREVIEW_MARKER = "---"

NAME_LABELS: tuple[str, ...] = ("転送元の名前", "Forwarded sender name")
ADDRESS_LABELS: tuple[str, ...] = ("転送元アドレス", "Forwarded sender address")
DATE_LABELS: tuple[str, ...] = ("日時", "Date")


def _label_patterns(labels: tuple[str, ...], value: str) -> tuple[re.Pattern[str], ...]:
    """Build plain patterns for every label, then the emphasis-wrapped ones."""
    # A plain label must not be followed by "*", otherwise "**Label:** x"
    # would be captured by the plain form with the closing markers attached.
    plain = [re.compile(rf"{re.escape(label)}:(?!\*)[ \t]*{value}") for label in labels]
    emphasis = [
        re.compile(rf"\*{{1,2}}{re.escape(label)}:\*{{1,2}}[ \t]*{value}") for label in labels
    ]
    return (*plain, *emphasis)


_TO_END_OF_LINE = r"([^\n]+)"
_ADDRESS_TOKEN = r"([^\s]+@[^\s]+)"

NAME_PATTERNS = _label_patterns(NAME_LABELS, _TO_END_OF_LINE)
ADDRESS_PATTERNS = _label_patterns(ADDRESS_LABELS, _ADDRESS_TOKEN)
DATE_PATTERNS = _label_patterns(DATE_LABELS, _TO_END_OF_LINE)

# 2024年1月5日 → 2024-1-5 so dateutil can read it
_JP_DATE = re.compile(r"(\d{4})\s*年\s*(\d{1,2})\s*月\s*(\d{1,2})\s*日")
# (金) / （金曜日）
_JP_WEEKDAY = re.compile(r"[(（]\s*[月火水木金土日](?:曜日?)?\s*[)）]")
_LINE_BREAK = re.compile(r"\r\n|\r|\n")

_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)


def _first_capture(patterns: tuple[re.Pattern[str], ...], body: str | None) -> str | None:
    """Return the trimmed capture of the first matching pattern, if non-empty."""
    if not body:
        return None
    for pattern in patterns:
        match = pattern.search(body)
        if match:
            value = match.group(1).strip()
            return value or None
    return None


def extract_forwarded_name(body: str | None) -> str | None:
    """Return the forwarded sender's display name, or None."""
    return _first_capture(NAME_PATTERNS, body)


def extract_forwarded_address(body: str | None) -> str | None:
    """Return the forwarded sender's address token, or None.

    The token must contain ``@`` and no whitespace; a label followed only by
    whitespace yields None rather than an empty string.
    """
    return _first_capture(ADDRESS_PATTERNS, body)


def parse_timestamp(text: str, default_tz: tzinfo | None = None) -> datetime | None:
    """Parse free-form date text (English or Japanese notation) into an aware datetime.

    Naive results are placed in ``default_tz`` (the local zone when None).
    Returns None when the text is not a recognisable date.
    """
    normalized = _JP_WEEKDAY.sub(" ", text)
    normalized = _JP_DATE.sub(r"\1-\2-\3", normalized).strip()
    if not normalized:
        return None
    try:
        # dateutil fills missing fields from ``default``; two different
        # defaults expose a date whose year, month or day was not written.
        parsed = date_parser.parse(normalized, default=_DEFAULT_A)
        check = date_parser.parse(normalized, default=_DEFAULT_B)
    except (ValueError, OverflowError) as exc:
        logger.debug("Unparseable date %r: %s", text, exc)
        return None
    if parsed.date() != check.date():
        logger.debug("Date %r has no full calendar date", text)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz or tz.tzlocal())
    return parsed


def extract_forwarded_timestamp(
    body: str | None, default_tz: tzinfo | None = None
) -> datetime | None:
    """Return the original send time of the forwarded message, or None."""
    captured = _first_capture(DATE_PATTERNS, body)
    if captured is None:
        return None
    return parse_timestamp(captured, default_tz)


def extract_body_preview(body: str | None) -> str:
    """Return up to 50 characters of body text with line breaks flattened.

    When a ``---`` rule is present the preview starts after it, skipping any
    whitespace that follows the rule.
    """
    if not body:
        return ""
    marker = body.find(PREVIEW_MARKER)
    if marker == -1:
        text = body[:PREVIEW_LENGTH]
    else:
        start = marker + len(PREVIEW_MARKER)
        while start < len(body) and body[start].isspace():
            start += 1
        text = body[start : start + PREVIEW_LENGTH]
    return _LINE_BREAK.sub(" ", text)


def extract_fields(body: str | None, default_tz: tzinfo | None = None) -> ExtractedFields:
    """Run every extractor over ``body``."""
    return ExtractedFields(
        forwarded_name=extract_forwarded_name(body),
        forwarded_address=extract_forwarded_address(body),
        forwarded_timestamp=extract_forwarded_timestamp(body, default_tz),
        body_preview=extract_body_preview(body),
    )
