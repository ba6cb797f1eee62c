"""Shared pytest fixtures."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from inbox_router.mcp.types import CandidateThread, MailMessage
from inbox_router.storage.db import RouterDatabase


def forwarded_body(
    address: str | None = "taro@example.com",
    date: str | None = "2024-01-05 10:00",
    name: str | None = "Taro Yamada",
    text: str = "Please see the quote below.",
) -> str:
    """Body of a message produced by a forwarding rule."""
    lines = []
    if name is not None:
        lines.append(f"転送元の名前: {name}")
    if address is not None:
        lines.append(f"転送元アドレス: {address}")
    if date is not None:
        lines.append(f"日時: {date}")
    lines.append("---")
    lines.append(text)
    return "\n".join(lines)


def make_message(
    id: str = "msg_1",
    body: str | None = None,
    subject: str = "Fwd: Quote request",
    has_attachment: bool = False,
) -> MailMessage:
    return MailMessage(
        id=id,
        raw_body=forwarded_body() if body is None else body,
        subject=subject,
        display_from="forwarder@corp.example",
        has_attachment=has_attachment,
    )


def make_thread(
    id: str = "thread_1",
    last_update_ms: int = 2_000_000_000_000,
    messages: list[MailMessage] | None = None,
) -> CandidateThread:
    return CandidateThread(
        id=id,
        last_update_ms=last_update_ms,
        messages=[make_message()] if messages is None else messages,
    )


@pytest.fixture
def db(tmp_path: Path) -> Iterator[RouterDatabase]:
    database = RouterDatabase(db_path=tmp_path / "router.db")
    yield database
    database.close()
