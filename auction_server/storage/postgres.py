"""Postgres storage backend leveraging asyncpg."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Callable

import asyncpg

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


class PostgresStorage:
    def __init__(
        self,
        *,
        dsn: str | None = None,
        clock: Callable[[], datetime] = utcnow,
        **connect_kwargs: Any,
    ) -> None:
        if not dsn and not connect_kwargs:
            raise ValueError("postgres connection details missing")
        self._dsn = dsn
        self._connect_kwargs = connect_kwargs
        self._clock = clock
        self._pool: asyncpg.Pool | None = None

    def _encode(self, payload: dict[str, Any]) -> str:
        return canonical_dumps(payload).decode()

    def _decode(self, value: Any) -> dict[str, Any]:
        if isinstance(value, (bytes, bytearray)):
            value = value.decode()
        if isinstance(value, str):
            return canonical_loads(value)
        return value

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(dsn=self._dsn, **self._connect_kwargs)
            async with self._pool.acquire() as conn:
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auctions (
                        auction_id SERIAL PRIMARY KEY,
                        data JSONB NOT NULL
                    );
                    """
                )
                await conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS auction_bids (
                        auction_id INTEGER NOT NULL REFERENCES auctions(auction_id),
                        version INTEGER NOT NULL,
                        data JSONB NOT NULL,
                        PRIMARY KEY (auction_id, version)
                    );
                    """
                )
        return self._pool

    async def create_auction(self, draft: AuctionDraft) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                auction_id = await conn.fetchval(
                    """INSERT INTO auctions(data) VALUES('{}'::jsonb) RETURNING auction_id"""
                )
                auction = draft.materialize(auction_id)
                await conn.execute(
                    """UPDATE auctions SET data=$2 WHERE auction_id=$1""",
                    auction_id,
                    self._encode(auction.to_dict()),
                )
        return auction

    async def get(self, auction_id: int) -> Auction:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                """SELECT data FROM auctions WHERE auction_id=$1""",
                auction_id,
            )
        if not row:
            raise AuctionNotFound(f"auction {auction_id} not found")
        return Auction.from_dict(self._decode(row["data"]))

    async def try_commit_bid(
        self, auction_id: int, amount: Decimal, expected_version: int
    ) -> CommitResult:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """SELECT data FROM auctions WHERE auction_id=$1 FOR UPDATE""",
                    auction_id,
                )
                current = Auction.from_dict(self._decode(row["data"])) if row else None
                result = evaluate_commit(current, amount, expected_version, self._clock())
                if result.committed:
                    await conn.execute(
                        """UPDATE auctions SET data=$2 WHERE auction_id=$1""",
                        auction_id,
                        self._encode(result.auction.to_dict()),
                    )
        return result

    async def list_auctions(self, filter: AuctionFilter = AuctionFilter.ALL) -> list[Auction]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch("SELECT data FROM auctions ORDER BY auction_id")
        auctions = [Auction.from_dict(self._decode(row["data"])) for row in rows]
        return filter_auctions(auctions, filter is AuctionFilter.ACTIVE_ONLY, self._clock())

    async def append_bid(self, bid: Bid) -> Bid:
        if bid.version is None:
            raise ValueError("only committed bids carrying a version can be appended")
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            try:
                await conn.execute(
                    """INSERT INTO auction_bids(auction_id, version, data) VALUES($1, $2, $3)""",
                    bid.auction_id,
                    bid.version,
                    self._encode(bid.to_dict()),
                )
            except asyncpg.UniqueViolationError as exc:
                raise ValueError(f"bid for version {bid.version} already recorded") from exc
        return bid

    async def list_bids(self, auction_id: int) -> list[Bid]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT data FROM auction_bids WHERE auction_id=$1 ORDER BY version""",
                auction_id,
            )
        return [Bid.from_dict(self._decode(row["data"])) for row in rows]

    async def count_bids(self) -> int:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            return int(await conn.fetchval("SELECT COUNT(*) FROM auction_bids"))

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
