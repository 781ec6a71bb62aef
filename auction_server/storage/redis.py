"""Redis storage backend using redis-py asyncio client."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable

from redis import asyncio as aioredis
from redis.exceptions import WatchError

from ..auction.models import (
    Auction,
    AuctionDraft,
    AuctionFilter,
    AuctionNotFound,
    Bid,
    CommitResult,
)
from ..auction.rules import evaluate_commit, filter_auctions
from ..transport.canonical_json import canonical_dumps, canonical_loads
from ..transport.timestamps import utcnow


class RedisStorage:
    """Each auction is one key; commits run as a WATCH/MULTI optimistic transaction on it."""

    def __init__(
        self,
        *,
        url: str,
        prefix: str = "auction",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not url:
            raise ValueError("redis url missing")
        self._redis = aioredis.from_url(url)
        self._prefix = prefix.rstrip(":")
        self._clock = clock

    def _auction_key(self, auction_id: int) -> str:
        return f"{self._prefix}:record:{auction_id}"

    def _ledger_key(self, auction_id: int) -> str:
        return f"{self._prefix}:bids:{auction_id}"

    def _sequence_key(self) -> str:
        return f"{self._prefix}:next_id"

    async def create_auction(self, draft: AuctionDraft) -> Auction:
        auction_id = int(await self._redis.incr(self._sequence_key()))
        auction = draft.materialize(auction_id)
        await self._redis.set(self._auction_key(auction_id), canonical_dumps(auction.to_dict()))
        return auction

    async def get(self, auction_id: int) -> Auction:
        raw = await self._redis.get(self._auction_key(auction_id))
        if raw is None:
            raise AuctionNotFound(f"auction {auction_id} not found")
        return Auction.from_dict(canonical_loads(raw))

    async def try_commit_bid(
        self, auction_id: int, amount: Decimal, expected_version: int
    ) -> CommitResult:
        key = self._auction_key(auction_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    current = Auction.from_dict(canonical_loads(raw)) if raw is not None else None
                    result = evaluate_commit(current, amount, expected_version, self._clock())
                    if not result.committed:
                        await pipe.unwatch()
                        return result
                    pipe.multi()
                    pipe.set(key, canonical_dumps(result.auction.to_dict()))
                    await pipe.execute()
                    return result
                except WatchError:
                    # another commit landed on this auction; re-read and decide again
                    continue

    async def list_auctions(self, filter: AuctionFilter = AuctionFilter.ALL) -> list[Auction]:
        pattern = self._auction_key("*")
        keys: list[bytes] = []
        cursor = 0
        while True:
            cursor, batch = await self._redis.scan(cursor=cursor, match=pattern, count=100)
            keys.extend(batch)
            if cursor == 0:
                break
        if not keys:
            return []
        values = await self._redis.mget(keys)
        auctions = [Auction.from_dict(canonical_loads(value)) for value in values if value]
        return filter_auctions(auctions, filter is AuctionFilter.ACTIVE_ONLY, self._clock())

    async def append_bid(self, bid: Bid) -> Bid:
        if bid.version is None:
            raise ValueError("only committed bids carrying a version can be appended")
        added = await self._redis.zadd(
            self._ledger_key(bid.auction_id),
            {canonical_dumps(bid.to_dict()): bid.version},
        )
        if not added:
            raise ValueError(f"bid for version {bid.version} already recorded")
        return bid

    async def list_bids(self, auction_id: int) -> list[Bid]:
        raw_bids = await self._redis.zrange(self._ledger_key(auction_id), 0, -1)
        return [Bid.from_dict(canonical_loads(raw)) for raw in raw_bids]

    async def count_bids(self) -> int:
        total = 0
        async for key in self._redis.scan_iter(match=self._ledger_key("*"), count=100):
            total += int(await self._redis.zcard(key))
        return total

    async def close(self) -> None:
        await self._redis.aclose()
