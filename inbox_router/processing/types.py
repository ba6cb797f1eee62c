"""Types for the forwarded-mail routing pipeline."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SkipReason(str, Enum):
    """Why a visited message (or thread) did not produce an output row."""

    STALE_THREAD = "stale_thread"
    HISTORY_HIT = "history_hit"
    PARSE_MISS = "parse_miss"
    NO_DOMAIN = "no_domain"
    UNROUTED = "unrouted"
    DUPLICATE = "duplicate"
    ERROR = "error"


# ── Extraction result ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ExtractedFields:
    """Forwarded-mail metadata pulled from a message body.

    Produced by extract_fields().  A missing address or timestamp means the
    message cannot be classified; the preview is always present.
    """

    forwarded_name: str | None
    forwarded_address: str | None
    forwarded_timestamp: datetime | None
    body_preview: str = ""


# ── Output ─────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class OutputRow:
    """One row appended to a destination table, in managed-column order."""

    original_timestamp: datetime
    sender: str
    subject: str
    body_preview: str
    attachment_marker: str
    thread_id: str
    message_id: str

    def to_cells(self) -> list[str]:
        """Render the row as the seven managed cell values."""
        return [
            self.original_timestamp.isoformat(),
            self.sender,
            self.subject,
            self.body_preview,
            self.attachment_marker,
            self.thread_id,
            self.message_id,
        ]


@dataclass
class RunSummary:
    """Counters describing one ingestion run."""

    threads: int = 0
    saved: int = 0
    skipped: dict[SkipReason, int] = field(default_factory=dict)
    saved_by_destination: dict[str, int] = field(default_factory=dict)
    elapsed_seconds: float = 0.0

    def skip(self, reason: SkipReason) -> None:
        self.skipped[reason] = self.skipped.get(reason, 0) + 1

    def skipped_for(self, reason: SkipReason) -> int:
        return self.skipped.get(reason, 0)
