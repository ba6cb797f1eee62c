"""Sender-domain → destination routing and per-destination duplicate sets."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from inbox_router.agent.ports import TableStore

logger = logging.getLogger(__name__)

# Offset of the Message ID cell inside the managed column block.
MESSAGE_ID_OFFSET = 6


def domain_of(address: str) -> str | None:
    """Return the lower-cased domain after the first ``@``, or None."""
    at = address.find("@")
    if at == -1:
        return None
    domain = address[at + 1 :].lower().strip()
    return domain or None


class ClassificationIndex:
    """Domain → destination map plus the message ids each destination already holds.

    Build one per run::

        index = ClassificationIndex.build(db.route_rows())
        index.load_seen_ids(db)
        destination = index.classify("example.com")
    """

    def __init__(self, domain_map: dict[str, str]) -> None:
        self._domain_map = domain_map
        self._seen: dict[str, set[str]] = {}

    @classmethod
    def build(cls, config_rows: Iterable[tuple[str, str]]) -> ClassificationIndex:
        """Build the index from ``(destination, domain)`` rows in table order.

        Blank cells are ignored, identical pairs collapse to one entry, and a
        domain listed under two destinations goes to the one listed last.
        """
        domain_map: dict[str, str] = {}
        seen_pairs: set[tuple[str, str]] = set()
        for row_no, (raw_destination, raw_domain) in enumerate(config_rows, start=1):
            destination = str(raw_destination or "").strip()
            domain = str(raw_domain or "").strip().lower()
            if not destination or not domain:
                logger.debug("Route row %d: blank destination or domain, skipping", row_no)
                continue
            if (destination, domain) in seen_pairs:
                logger.debug("Route row %d: duplicate %s → %s ignored", row_no, domain, destination)
                continue
            seen_pairs.add((destination, domain))

            previous = domain_map.get(domain)
            if previous is not None and previous != destination:
                logger.warning(
                    "Domain %s is routed to both %r and %r; using %r (row %d)",
                    domain,
                    previous,
                    destination,
                    destination,
                    row_no,
                )
            domain_map[domain] = destination

        logger.info(
            "Routing index built: %d domain(s) → %d destination(s)",
            len(domain_map),
            len(set(domain_map.values())),
        )
        return cls(domain_map)

    @property
    def domain_map(self) -> dict[str, str]:
        return dict(self._domain_map)

    @property
    def destinations(self) -> list[str]:
        """Unique destination names, in first-seen order."""
        return list(dict.fromkeys(self._domain_map.values()))

    def classify(self, domain: str) -> str | None:
        """Return the destination for ``domain``, or None if it is not routed."""
        return self._domain_map.get(domain.strip().lower())

    # ── Seen-id sets ───────────────────────────────────────────────────────────

    def load_seen_ids(self, store: TableStore) -> None:
        """Load the Message ID column of every routed destination, once per run."""
        self._seen = {}
        for destination in self.destinations:
            ids = self._read_ids(store, destination)
            self._seen[destination] = ids
            logger.info("Destination %r holds %d message id(s)", destination, len(ids))

    def seen_ids(self, destination: str) -> set[str]:
        """Return the ids already stored in ``destination`` (empty if unknown)."""
        return self._seen.get(destination, set())

    def is_recorded(self, destination: str, message_id: str) -> bool:
        return message_id in self.seen_ids(destination)

    def mark_recorded(self, destination: str, message_id: str) -> None:
        """Note an id buffered for ``destination`` during this run."""
        self._seen.setdefault(destination, set()).add(message_id)

    @staticmethod
    def _read_ids(store: TableStore, destination: str) -> set[str]:
        start = store.managed_column_offset(destination)
        if start is None:
            return set()
        values = store.read_column(destination, start + MESSAGE_ID_OFFSET)
        return {v for v in values if v}
