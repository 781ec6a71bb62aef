"""Append-only ledger of accepted bids, kept per auction in commit order."""

from __future__ import annotations

from dataclasses import dataclass

from ..auction.models import Bid, BidOutcome
from ..storage import BidStore


@dataclass
class BidLedger:
    storage: BidStore

    async def append(self, bid: Bid) -> Bid:
        if bid.outcome is not BidOutcome.ACCEPTED:
            raise ValueError("only accepted bids are recorded in the ledger")
        return await self.storage.append_bid(bid)

    async def list(self, auction_id: int) -> list[Bid]:
        """Accepted bids ordered by the auction version their commit produced."""
        return await self.storage.list_bids(auction_id)

    async def count(self) -> int:
        return await self.storage.count_bids()
