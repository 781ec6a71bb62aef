"""Shared fixtures for the unit suite."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from auction_server.auction.models import AuctionDraft


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def draft(clock):
    """One-hour auction opening at 100."""
    return AuctionDraft(
        item="Vintage camera",
        seller_id=1,
        opened_at=clock(),
        closes_at=clock() + timedelta(hours=1),
        opening_price=Decimal("100"),
    )
