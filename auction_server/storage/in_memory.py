"""In-memory storage backend for auctions and the bid ledger."""

from __future__ import annotations

import asyncio
import bisect
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Callable

from ..auction.models import (
    Auction,
    AuctionDraft,
    AuctionFilter,
    AuctionNotFound,
    Bid,
    CommitResult,
)
from ..auction.rules import evaluate_commit, filter_auctions
from ..transport.timestamps import utcnow


class InMemoryStorage:
    """Auction records are frozen dataclasses swapped whole under a per-auction lock."""

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._clock = clock
        self._auctions: dict[int, Auction] = {}
        self._auction_locks: dict[int, asyncio.Lock] = {}
        self._bids: dict[int, list[tuple[int, Bid]]] = defaultdict(list)
        self._next_id = 1
        self._catalog_lock = asyncio.Lock()
        self._ledger_lock = asyncio.Lock()

    async def create_auction(self, draft: AuctionDraft) -> Auction:
        async with self._catalog_lock:
            auction = draft.materialize(self._next_id)
            self._auctions[auction.auction_id] = auction
            self._auction_locks[auction.auction_id] = asyncio.Lock()
            self._next_id += 1
            return auction

    async def get(self, auction_id: int) -> Auction:
        try:
            return self._auctions[auction_id]
        except KeyError as exc:
            raise AuctionNotFound(f"auction {auction_id} not found") from exc

    async def try_commit_bid(
        self, auction_id: int, amount: Decimal, expected_version: int
    ) -> CommitResult:
        lock = self._auction_locks.get(auction_id)
        if lock is None:
            return evaluate_commit(None, amount, expected_version, self._clock())
        async with lock:
            result = evaluate_commit(
                self._auctions.get(auction_id), amount, expected_version, self._clock()
            )
            if result.committed:
                self._auctions[auction_id] = result.auction
            return result

    async def list_auctions(self, filter: AuctionFilter = AuctionFilter.ALL) -> list[Auction]:
        snapshot = list(self._auctions.values())
        return filter_auctions(snapshot, filter is AuctionFilter.ACTIVE_ONLY, self._clock())

    async def append_bid(self, bid: Bid) -> Bid:
        if bid.version is None:
            raise ValueError("only committed bids carrying a version can be appended")
        async with self._ledger_lock:
            entries = self._bids[bid.auction_id]
            if any(version == bid.version for version, _ in entries):
                raise ValueError(
                    f"auction {bid.auction_id} already has a bid for version {bid.version}"
                )
            bisect.insort(entries, (bid.version, bid), key=lambda entry: entry[0])
            return bid

    async def list_bids(self, auction_id: int) -> list[Bid]:
        async with self._ledger_lock:
            return [bid for _, bid in self._bids.get(auction_id, [])]

    async def count_bids(self) -> int:
        async with self._ledger_lock:
            return sum(len(entries) for entries in self._bids.values())

    async def close(self) -> None:
        return None
