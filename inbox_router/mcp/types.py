"""Data types shared across MCP client modules."""

from dataclasses import dataclass, field


@dataclass(frozen=True)
class MailMessage:
    """A single message inside a Gmail thread, as fetched for ingestion.

    ``raw_body`` is the plain-text body; forwarded-mail metadata is parsed
    out of it by the extractor.
    """

    id: str
    raw_body: str
    subject: str
    display_from: str
    has_attachment: bool = False


@dataclass(frozen=True)
class CandidateThread:
    """A thread returned by a mailbox search.

    ``messages`` are ordered oldest → newest, the way Gmail lists them.
    ``last_update_ms`` is 0 when no message date could be read.
    """

    id: str
    last_update_ms: int
    messages: list[MailMessage] = field(default_factory=list)
