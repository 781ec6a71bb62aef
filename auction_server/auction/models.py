"""Shared auction data structures."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from ..transport.timestamps import format_timestamp, parse_timestamp


class AuctionNotFound(KeyError):
    """Raised when an auction id is unknown to the store."""


class AuctionFilter(str, Enum):
    ALL = "all"
    ACTIVE_ONLY = "active_only"


class CommitStatus(str, Enum):
    COMMITTED = "committed"
    STALE_VERSION = "stale_version"
    BID_TOO_LOW = "bid_too_low"
    CLOSED = "closed"
    NOT_FOUND = "not_found"


class BidOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class RejectReason(str, Enum):
    AUCTION_NOT_FOUND = "auction_not_found"
    AUCTION_CLOSED = "auction_closed"
    BID_TOO_LOW = "bid_too_low"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    USER_NOT_FOUND = "user_not_found"
    OUTBID = "outbid"
    BALANCE_AUTHORITY_UNAVAILABLE = "balance_authority_unavailable"


def to_amount(value: Any) -> Decimal:
    """Convert a JSON number or string into a Decimal amount."""
    if isinstance(value, bool):
        raise ValueError("amount must be numeric")
    amount = Decimal(str(value))
    if not amount.is_finite():
        raise ValueError("amount must be finite")
    return amount


@dataclass(frozen=True)
class Auction:
    auction_id: int
    item: str
    seller_id: int
    opened_at: datetime
    closes_at: datetime
    opening_price: Decimal
    current_price: Decimal
    version: int = 0
    buy_now: Decimal | None = None

    def is_closed(self, now: datetime) -> bool:
        return now >= self.closes_at

    def with_bid(self, amount: Decimal) -> "Auction":
        return replace(self, current_price=amount, version=self.version + 1)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.auction_id,
            "item": self.item,
            "seller_id": self.seller_id,
            "start_time": format_timestamp(self.opened_at),
            "end_time": format_timestamp(self.closes_at),
            "start_bid": str(self.opening_price),
            "current_bid": str(self.current_price),
            "version": self.version,
        }
        if self.buy_now is not None:
            payload["buy_now"] = str(self.buy_now)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Auction":
        buy_now = data.get("buy_now")
        return cls(
            auction_id=int(data["id"]),
            item=data["item"],
            seller_id=int(data["seller_id"]),
            opened_at=parse_timestamp(data["start_time"]),
            closes_at=parse_timestamp(data["end_time"]),
            opening_price=to_amount(data["start_bid"]),
            current_price=to_amount(data["current_bid"]),
            version=int(data.get("version", 0)),
            buy_now=to_amount(buy_now) if buy_now is not None else None,
        )


@dataclass(frozen=True)
class AuctionDraft:
    """Validated creation input; the store assigns the id."""

    item: str
    seller_id: int
    opened_at: datetime
    closes_at: datetime
    opening_price: Decimal
    buy_now: Decimal | None = None

    def materialize(self, auction_id: int) -> Auction:
        return Auction(
            auction_id=auction_id,
            item=self.item,
            seller_id=self.seller_id,
            opened_at=self.opened_at,
            closes_at=self.closes_at,
            opening_price=self.opening_price,
            current_price=self.opening_price,
            version=0,
            buy_now=self.buy_now,
        )


@dataclass(frozen=True)
class CommitResult:
    status: CommitStatus
    auction: Auction | None = None

    @property
    def committed(self) -> bool:
        return self.status is CommitStatus.COMMITTED

    @property
    def new_version(self) -> int | None:
        if self.committed and self.auction is not None:
            return self.auction.version
        return None


@dataclass(frozen=True)
class Bid:
    user_id: int
    auction_id: int
    amount: Decimal
    submitted_at: datetime
    outcome: BidOutcome
    reason: RejectReason | None = None
    version: int | None = None
    accepted_at: datetime | None = None
    correlation_id: str | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "user_id": self.user_id,
            "auction_id": self.auction_id,
            "amount": str(self.amount),
            "timestamp": format_timestamp(self.submitted_at),
            "outcome": self.outcome.value,
        }
        if self.reason is not None:
            payload["reason"] = self.reason.value
        if self.version is not None:
            payload["version"] = self.version
        if self.accepted_at is not None:
            payload["accepted_at"] = format_timestamp(self.accepted_at)
        if self.correlation_id is not None:
            payload["correlation_id"] = self.correlation_id
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Bid":
        reason = data.get("reason")
        accepted_at = data.get("accepted_at")
        version = data.get("version")
        return cls(
            user_id=int(data["user_id"]),
            auction_id=int(data["auction_id"]),
            amount=to_amount(data["amount"]),
            submitted_at=parse_timestamp(data["timestamp"]),
            outcome=BidOutcome(data["outcome"]),
            reason=RejectReason(reason) if reason else None,
            version=int(version) if version is not None else None,
            accepted_at=parse_timestamp(accepted_at) if accepted_at else None,
            correlation_id=data.get("correlation_id"),
        )
