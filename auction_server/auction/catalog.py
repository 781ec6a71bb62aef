"""Auction creation and read-only listing."""

from __future__ import annotations

import math
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable

from ..balance.client import BalanceAuthorityClient
from ..storage import AuctionStore
from ..transport.timestamps import utcnow
from .models import Auction, AuctionDraft, AuctionFilter


class SellerNotFound(ValueError):
    """Raised when the balance authority does not know the seller."""


class AuctionCatalog:
    def __init__(
        self,
        store: AuctionStore,
        balance: BalanceAuthorityClient,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._balance = balance
        self._clock = clock

    async def create_auction(
        self,
        item: str,
        seller_id: int,
        duration_hours: float,
        start_bid: Decimal,
        buy_now: Decimal | None = None,
    ) -> Auction:
        if not item.strip():
            raise ValueError("item must not be empty")
        if not math.isfinite(duration_hours) or duration_hours <= 0:
            raise ValueError("duration must be a positive number of hours")
        if start_bid < 0:
            raise ValueError("start_bid must not be negative")
        if buy_now is not None and buy_now <= start_bid:
            raise ValueError("buy_now must exceed start_bid")
        if not await self._balance.user_exists(seller_id):
            raise SellerNotFound(f"seller {seller_id} not found")
        opened_at = self._clock()
        try:
            closes_at = opened_at + timedelta(hours=duration_hours)
        except OverflowError as exc:
            raise ValueError("duration is out of range") from exc
        draft = AuctionDraft(
            item=item,
            seller_id=seller_id,
            opened_at=opened_at,
            closes_at=closes_at,
            opening_price=start_bid,
            buy_now=buy_now,
        )
        return await self._store.create_auction(draft)

    async def get(self, auction_id: int) -> Auction:
        return await self._store.get(auction_id)

    async def list(self, filter: AuctionFilter = AuctionFilter.ALL) -> list[Auction]:
        return await self._store.list_auctions(filter)
