"""Unit tests for the accepted-bid ledger."""

from __future__ import annotations

from decimal import Decimal

import pytest

from auction_server.auction.models import Bid, BidOutcome, RejectReason
from auction_server.ledger.service import BidLedger
from auction_server.storage.in_memory import InMemoryStorage


def _accepted(clock, amount: str, version: int, user_id: int = 1) -> Bid:
    return Bid(
        user_id=user_id,
        auction_id=1,
        amount=Decimal(amount),
        submitted_at=clock(),
        outcome=BidOutcome.ACCEPTED,
        version=version,
        accepted_at=clock(),
    )


@pytest.fixture
def ledger(clock):
    return BidLedger(InMemoryStorage(clock))


class TestBidLedger:
    @pytest.mark.asyncio
    async def test_listing_follows_commit_order(self, ledger, clock):
        """Bids appended out of order come back ordered by their commit version."""
        await ledger.append(_accepted(clock, "150", 3, user_id=3))
        await ledger.append(_accepted(clock, "110", 1, user_id=1))
        await ledger.append(_accepted(clock, "120", 2, user_id=2))

        bids = await ledger.list(1)

        assert [bid.version for bid in bids] == [1, 2, 3]
        assert [bid.amount for bid in bids] == [Decimal("110"), Decimal("120"), Decimal("150")]
        assert await ledger.count() == 3

    @pytest.mark.asyncio
    async def test_rejected_bids_are_refused(self, ledger, clock):
        rejected = Bid(
            user_id=1,
            auction_id=1,
            amount=Decimal("90"),
            submitted_at=clock(),
            outcome=BidOutcome.REJECTED,
            reason=RejectReason.BID_TOO_LOW,
        )
        with pytest.raises(ValueError):
            await ledger.append(rejected)
        assert await ledger.list(1) == []

    @pytest.mark.asyncio
    async def test_duplicate_version_is_refused(self, ledger, clock):
        await ledger.append(_accepted(clock, "110", 1))
        with pytest.raises(ValueError):
            await ledger.append(_accepted(clock, "115", 1, user_id=2))

    @pytest.mark.asyncio
    async def test_unknown_auction_has_empty_history(self, ledger):
        assert await ledger.list(99) == []

    def test_bid_serialization_keeps_amount_exact(self, clock):
        bid = _accepted(clock, "120.10", 1)
        assert Bid.from_dict(bid.to_dict()) == bid
        assert bid.to_dict()["amount"] == "120.10"
