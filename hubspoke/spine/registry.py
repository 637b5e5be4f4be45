"""
Membership Registry - hub-side table of connected spokes.

A SpokeRecord exists for a connection only between its welcome handshake
and its disconnect. Records are kept in handshake order; lookups return
the first match in that order.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator

logger = logging.getLogger(__name__)

# An identifier containing any of these is a market ("BINANCE:btcusdt",
# "BTC-USD", "BTC/USD"); anything else is an index id ("BTCUSD").
MARKET_SEPARATORS = (":", "-", "/")


def is_market_identifier(identifier: str) -> bool:
    return any(sep in identifier for sep in MARKET_SEPARATORS)


@dataclass(eq=False)
class SpokeRecord:
    """One registered spoke and what it owns."""
    connection: Any
    markets: set[str] = field(default_factory=set)
    indexes: set[str] = field(default_factory=set)
    registered_at: float = field(default_factory=time.time)

    def owns(self, identifier: str) -> bool:
        if is_market_identifier(identifier):
            return identifier in self.markets
        return identifier in self.indexes

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection": str(self.connection),
            "markets": sorted(self.markets),
            "indexes": sorted(self.indexes),
            "registered_at": self.registered_at,
        }


class MembershipRegistry:
    """
    Ordered collection of SpokeRecords, matched by connection identity.

    No deduplication across connections: two spokes claiming the same
    market are both kept and the earlier one wins lookups.
    """

    def __init__(self):
        self._records: list[SpokeRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[SpokeRecord]:
        return iter(list(self._records))

    def __contains__(self, connection: Any) -> bool:
        return self.get(connection) is not None

    def get(self, connection: Any) -> SpokeRecord | None:
        for record in self._records:
            if record.connection is connection:
                return record
        return None

    def add(
        self,
        connection: Any,
        markets: Iterable[str] = (),
        indexes: Iterable[str] = (),
    ) -> SpokeRecord:
        """
        Register a connection after its handshake.

        A connection that is already registered keeps its position and has
        its ownership replaced.
        """
        record = self.get(connection)
        if record is not None:
            record.markets = set(markets)
            record.indexes = set(indexes)
            logger.info(f"[REGISTRY] Updated spoke {connection} ({len(record.indexes)} indexes)")
            return record

        record = SpokeRecord(connection=connection, markets=set(markets), indexes=set(indexes))
        self._records.append(record)
        return record

    def remove(self, connection: Any) -> SpokeRecord | None:
        """Drop the record for connection. Returns it, or None if absent."""
        for i, record in enumerate(self._records):
            if record.connection is connection:
                del self._records[i]
                return record
        return None

    def find_spoke_for(self, identifier: str) -> SpokeRecord | None:
        """
        Find the spoke owning a market or index.

        Identifiers with a separator are matched against market sets,
        others against index sets.
        """
        for record in self._records:
            if record.owns(identifier):
                return record
        return None

    def clear(self) -> None:
        self._records.clear()

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self._records]
