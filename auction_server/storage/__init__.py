"""Storage backend factory."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Protocol

from ..auction.models import Auction, AuctionDraft, AuctionFilter, Bid, CommitResult
from ..config import ServerConfig
from ..transport.timestamps import utcnow
from .in_memory import InMemoryStorage
from .postgres import PostgresStorage
from .redis import RedisStorage


class AuctionStore(Protocol):
    async def create_auction(self, draft: AuctionDraft) -> Auction: ...

    async def get(self, auction_id: int) -> Auction:
        """Return the auction or raise AuctionNotFound."""
        ...

    async def try_commit_bid(
        self, auction_id: int, amount: Decimal, expected_version: int
    ) -> CommitResult:
        """Atomic compare-and-swap; the only path that changes current price."""
        ...

    async def list_auctions(self, filter: AuctionFilter = AuctionFilter.ALL) -> list[Auction]: ...


class BidStore(Protocol):
    async def append_bid(self, bid: Bid) -> Bid: ...

    async def list_bids(self, auction_id: int) -> list[Bid]: ...

    async def count_bids(self) -> int: ...


class Storage(AuctionStore, BidStore, Protocol):
    async def close(self) -> None: ...


def build_storage(config: ServerConfig, clock: Callable[[], datetime] = utcnow) -> Storage:
    backend = config.storage.backend
    options = dict(config.storage.options)
    if backend == "in_memory":
        return InMemoryStorage(clock=clock)
    if backend == "redis":
        return RedisStorage(clock=clock, **options)
    if backend == "postgres":
        return PostgresStorage(clock=clock, **options)
    raise ValueError(f"unknown storage backend {backend}")
