"""Collaborator interfaces the ingestion engine depends on.

RouterDatabase implements the storage, configuration and settings protocols;
GmailClient implements MailSearch.  Tests substitute mocks.
"""

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from inbox_router.mcp.types import CandidateThread


@runtime_checkable
class MailSearch(Protocol):
    """Mailbox search returning candidate threads, newest first."""

    async def search(self, query: str, offset: int, limit: int) -> list[CandidateThread]:
        """Run a Gmail search query and return up to ``limit`` threads.

        Raises on transport or tool failure — the run must abort.
        """
        ...


@runtime_checkable
class TableStore(Protocol):
    """Destination tables: a header row followed by rows, newest at the top."""

    def read_column(self, destination: str, column_offset: int) -> list[str]:
        """Return every data cell in the column, top to bottom."""
        ...

    def append_rows_at_top(self, destination: str, rows: Sequence[Sequence[str]]) -> None:
        """Insert ``rows`` as one batch above the existing data, keeping their order.

        Each row holds the managed-column cells; they are placed starting at
        managed_column_offset().  The batch is written all-or-nothing.
        """
        ...

    def ensure_destination(self, destination: str) -> bool:
        """Create the destination with the fixed header schema if absent.

        Returns True when the destination was created by this call.
        """
        ...

    def managed_column_offset(self, destination: str) -> int | None:
        """Return the 0-based column where the managed block starts.

        None when the destination does not exist yet or has no data.
        Raises MissingHeaderError for an existing destination with data but
        no managed header.
        """
        ...

    def restrict_columns(
        self, destination: str, column_range: tuple[int, int], allowed_principal: str
    ) -> None:
        """Allow only ``allowed_principal`` to edit columns ``[start, end)``."""
        ...


@runtime_checkable
class ConfigSource(Protocol):
    """Human-maintained routing table."""

    def route_rows(self) -> list[tuple[str, str]]:
        """Return ``(destination, domain)`` rows in table order."""
        ...


@runtime_checkable
class SettingsStore(Protocol):
    """Small key/value state that survives between runs."""

    def get_property(self, key: str) -> str | None: ...

    def set_property(self, key: str, value: str) -> None: ...

    def set_properties(self, values: dict[str, str]) -> None:
        """Write several keys atomically."""
        ...
