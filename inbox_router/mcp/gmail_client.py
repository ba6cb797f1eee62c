"""Gmail MCP client — wraps workspace-mcp Gmail tools as a thread search."""

import asyncio
import json
import logging
import os
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dateutil import tz
from mcp import ClientSession
from mcp.client.stdio import StdioServerParameters, stdio_client
from mcp.types import TextContent

from inbox_router.mcp.types import CandidateThread, MailMessage
from inbox_router.processing.extractor import parse_timestamp

logger = logging.getLogger(__name__)

# JSON-decoded value from an MCP tool response
_JsonValue = dict[str, Any] | list[Any] | str | None

_NO_ATTACHMENT = {"", "0", "none", "no", "false"}

# Upper bound on message hits requested while collecting distinct threads
_SEARCH_PAGE_MAX = 500


class MCPError(Exception):
    """Raised when a workspace-mcp tool call returns an error."""


class GmailClient:
    """Thin async wrapper around the workspace-mcp Gmail tools.

    Implements the MailSearch port: ``search()`` returns whole threads so the
    engine can walk each one newest-first.  Use the `gmail_client()` context
    manager to construct and tear down correctly.
    """

    def __init__(self, session: ClientSession, user_email: str) -> None:
        self._session = session
        self._user_email = user_email

    # ── Public API ─────────────────────────────────────────────────────────────

    async def search(self, query: str, offset: int, limit: int) -> list[CandidateThread]:
        """Return up to ``limit`` threads matching ``query``, skipping the first ``offset``.

        Gmail search is message-based; hits from the same thread collapse into
        one thread, in order of the newest hit.  The hit page is widened until
        it yields ``offset + limit`` distinct threads or the results run out,
        so one busy thread cannot crowd out the others.  Each thread is then
        fetched in full, including messages older than the query window.
        """
        wanted = offset + limit
        page_size = wanted
        while True:
            raw = await self._call(
                "search_gmail_messages",
                {"query": query, "page_size": page_size,
                 "user_google_email": self._user_email},
            )
            hits = self._parse_search_hits(raw)
            thread_ids = list(dict.fromkeys(hits))
            if len(thread_ids) >= wanted or len(hits) < page_size:
                break
            if page_size >= _SEARCH_PAGE_MAX:
                logger.warning(
                    "Search %r: %d hits cover only %d thread(s); giving up at page size %d",
                    query,
                    len(hits),
                    len(thread_ids),
                    page_size,
                )
                break
            page_size = min(page_size * 2, _SEARCH_PAGE_MAX)
            logger.debug("Search %r: widening hit page to %d", query, page_size)
        thread_ids = thread_ids[offset:wanted]

        threads: list[CandidateThread] = []
        for thread_id in thread_ids:
            content = await self._call(
                "get_gmail_thread_content",
                {"thread_id": thread_id, "user_google_email": self._user_email},
            )
            threads.append(self._parse_thread(thread_id, content))
        logger.debug("Search %r → %d thread(s)", query, len(threads))
        return threads

    # ── Internal helpers ───────────────────────────────────────────────────────

    async def _call(self, tool_name: str, arguments: dict[str, Any]) -> _JsonValue:
        """Call a workspace-mcp tool and return the parsed JSON result.

        Raises MCPError if the tool returns an error.  Plain-text responses are
        returned as-is.
        """
        logger.debug("MCP → %s %s", tool_name, arguments)
        result = await self._session.call_tool(tool_name, arguments)

        if result.isError:
            raise MCPError(f"Tool {tool_name!r} returned error: {result.content}")

        if not result.content:
            return None

        text: str | None = None
        for item in result.content:
            if isinstance(item, TextContent):
                text = item.text
                break

        if text is None:
            return None

        try:
            parsed: _JsonValue = json.loads(text)
            return parsed
        except json.JSONDecodeError:
            return text

    @staticmethod
    def _parse_search_hits(raw: _JsonValue) -> list[str]:
        """Return the thread ID of every message hit, in result order."""
        if isinstance(raw, list):
            return [
                str(m.get("thread_id", ""))
                for m in raw
                if isinstance(m, dict) and m.get("thread_id")
            ]
        if isinstance(raw, str):
            return re.findall(r"Thread ID:\s*(\S+)", raw)
        return []

    @staticmethod
    def _parse_search_thread_ids(raw: _JsonValue) -> list[str]:
        """Extract unique thread IDs, in result order, from a search response."""
        return list(dict.fromkeys(GmailClient._parse_search_hits(raw)))

    @staticmethod
    def _parse_thread(thread_id: str, raw: _JsonValue) -> CandidateThread:
        """Parse a thread content response (text blocks or legacy JSON).

        workspace-mcp returns text like::

            Thread ID: t1
            Subject: Fwd: Invoice

            === Message 1 ===
            Message ID: m1
            From: alice@example.com
            Date: Mon, 1 Jan 2026 12:00:00 +0000
            Attachments: invoice.pdf

            Body text follows after a blank line...

        The thread's last update time is its newest message date.
        """
        messages: list[MailMessage] = []
        dates: list[int] = []

        if isinstance(raw, dict):
            raw = raw.get("messages", [])
        if isinstance(raw, list):
            for data in raw:
                if isinstance(data, dict):
                    message, date_ms = GmailClient._parse_message_dict(data)
                    messages.append(message)
                    if date_ms is not None:
                        dates.append(date_ms)
        elif isinstance(raw, str):
            first_subject = re.search(r"^Subject:[ \t]*(.+)$", raw, re.MULTILINE)
            default_subject = first_subject.group(1).strip() if first_subject else "(no subject)"
            blocks = re.split(r"(?=^(?:=== Message \d+ ===|Message ID:))", raw, flags=re.MULTILINE)
            position = 0
            for block in blocks:
                block = block.strip()
                if block.startswith("==="):
                    block = block.split("\n", 1)[1].strip() if "\n" in block else ""
                    if not block.startswith("Message ID:") and not re.search(
                        r"^From:", block, re.MULTILINE
                    ):
                        continue
                elif not block.startswith("Message ID:"):
                    continue
                position += 1
                message, date_ms = GmailClient._parse_message_block(
                    thread_id, position, block, default_subject
                )
                messages.append(message)
                if date_ms is not None:
                    dates.append(date_ms)
        else:
            logger.warning("Unexpected thread content for %s: %r", thread_id, raw)

        return CandidateThread(
            id=thread_id,
            last_update_ms=max(dates) if dates else 0,
            messages=messages,
        )

    @staticmethod
    def _parse_message_block(
        thread_id: str, position: int, block: str, default_subject: str = "(no subject)"
    ) -> tuple[MailMessage, int | None]:
        # Body: everything after the header block (first blank line)
        body = ""
        headers = block
        header_end = re.search(r"\n\s*\n", block)
        if header_end:
            headers = block[: header_end.start()]
            body = block[header_end.end():].strip()

        def _header(name: str) -> str:
            m = re.search(rf"^{name}:[ \t]*(.*)$", headers, re.MULTILINE)
            return m.group(1).strip() if m else ""

        attachments = _header("Attachments")
        message = MailMessage(
            id=_header("Message ID") or f"{thread_id}#{position}",
            raw_body=body,
            subject=_header("Subject") or default_subject,
            display_from=_header("From"),
            has_attachment=attachments.lower() not in _NO_ATTACHMENT,
        )
        return message, _date_ms(_header("Date"))

    @staticmethod
    def _parse_message_dict(data: dict[str, Any]) -> tuple[MailMessage, int | None]:
        """Map a raw MCP message dict to a MailMessage (legacy JSON)."""
        attachments = data.get("attachments") or []
        message = MailMessage(
            id=str(data.get("message_id", data.get("id", ""))),
            raw_body=str(data.get("body") or ""),
            subject=str(data.get("subject") or "(no subject)"),
            display_from=str(data.get("from", "")),
            has_attachment=bool(data.get("has_attachment")) or bool(attachments),
        )
        return message, _date_ms(str(data.get("date") or ""))


def _date_ms(value: str) -> int | None:
    if not value:
        return None
    parsed = parse_timestamp(value, default_tz=tz.UTC)
    if parsed is None:
        logger.warning("Unparseable message date %r", value)
        return None
    return int(parsed.timestamp() * 1000)


_MCP_CONNECT_RETRIES = 5
_MCP_RETRY_DELAY_SECONDS = 3


@asynccontextmanager
async def gmail_client(
    *,
    user_email: str | None = None,
    server_command: str | None = None,
) -> AsyncIterator[GmailClient]:
    """Async context manager that yields a connected, ready-to-use GmailClient.

    Spawns `workspace-mcp` as a subprocess via the MCP stdio transport,
    initialises the session and tears everything down cleanly on exit.
    Retries up to ``_MCP_CONNECT_RETRIES`` times on startup failure.

    Args:
        user_email: Google account email. Falls back to USER_GOOGLE_EMAIL env var.
        server_command: Command used to launch the MCP server.
                        Defaults to GMAIL_MCP_SERVER_PATH env var (or "uvx").

    Example::

        async with gmail_client() as client:
            threads = await client.search("in:inbox after:1700000000", 0, 11)
    """
    email = user_email or os.environ.get("USER_GOOGLE_EMAIL", "")
    if not email:
        raise ValueError(
            "user_email must be provided or USER_GOOGLE_EMAIL env var must be set"
        )

    cmd = server_command or os.environ.get("GMAIL_MCP_SERVER_PATH", "uvx")
    _cmd_basename = os.path.basename(cmd).lower().replace(".exe", "")
    args = ["workspace-mcp", "--tools", "gmail"] if _cmd_basename == "uvx" else []

    server_params = StdioServerParameters(
        command=cmd,
        args=args,
        env={
            **os.environ,
            "GOOGLE_OAUTH_CLIENT_ID": os.environ.get("GOOGLE_OAUTH_CLIENT_ID", ""),
            "GOOGLE_OAUTH_CLIENT_SECRET": os.environ.get("GOOGLE_OAUTH_CLIENT_SECRET", ""),
            "USER_GOOGLE_EMAIL": email,
            "MCP_SINGLE_USER_MODE": "1",
            "WORKSPACE_MCP_PORT": os.environ.get("WORKSPACE_MCP_PORT", "18741"),
            "PYTHONUTF8": "1",
        },
    )

    last_err: BaseException | None = None
    for attempt in range(1, _MCP_CONNECT_RETRIES + 1):
        connected = False
        try:
            async with stdio_client(server_params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    connected = True
                    logger.info("Gmail MCP client connected (%s)", email)
                    yield GmailClient(session, email)
                    return
        except Exception as exc:
            # Errors raised by the caller's block are not connection failures.
            if connected:
                raise
            last_err = exc
            if attempt < _MCP_CONNECT_RETRIES:
                logger.warning(
                    "MCP server connection failed (attempt %d/%d) — retrying in %ds",
                    attempt,
                    _MCP_CONNECT_RETRIES,
                    _MCP_RETRY_DELAY_SECONDS,
                )
                await asyncio.sleep(_MCP_RETRY_DELAY_SECONDS)
            else:
                raise

    raise MCPError(f"Failed to connect after {_MCP_CONNECT_RETRIES} attempts") from last_err
