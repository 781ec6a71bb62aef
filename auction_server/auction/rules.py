"""Commit rule shared by every auction store backend."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from .models import Auction, CommitResult, CommitStatus


def evaluate_commit(
    auction: Auction | None,
    amount: Decimal,
    expected_version: int,
    now: datetime,
) -> CommitResult:
    """Decide a compare-and-swap against the stored auction.

    Callers must hold whatever per-auction exclusion their backend provides
    while calling this and while persisting the returned auction.

    A snapshot whose version has moved is still admitted when the amount beats
    the live price: every commit since the snapshot was lower, so nothing is
    overwritten and the price keeps strictly increasing.
    """
    if auction is None:
        return CommitResult(CommitStatus.NOT_FOUND)
    if auction.is_closed(now):
        return CommitResult(CommitStatus.CLOSED, auction)
    if amount > auction.current_price:
        return CommitResult(CommitStatus.COMMITTED, auction.with_bid(amount))
    if auction.version != expected_version:
        return CommitResult(CommitStatus.STALE_VERSION, auction)
    return CommitResult(CommitStatus.BID_TOO_LOW, auction)


def filter_auctions(auctions: list[Auction], active_only: bool, now: datetime) -> list[Auction]:
    ordered = sorted(auctions, key=lambda auction: auction.auction_id)
    if not active_only:
        return ordered
    return [auction for auction in ordered if not auction.is_closed(now)]
