"""Bid admission: reserve funds remotely, then conditionally commit locally."""

from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, TypeVar

from ..auction.models import (
    Auction,
    AuctionNotFound,
    Bid,
    BidOutcome,
    CommitStatus,
    RejectReason,
)
from ..balance.client import BalanceAuthorityClient
from ..balance.models import (
    ConfirmResult,
    ReleaseResult,
    Reservation,
    ReservationStatus,
    ReserveResult,
)
from ..ledger.service import BidLedger
from ..monitoring.alerts import AlertSink
from ..storage import AuctionStore
from ..transport.canonical_json import correlation_id
from ..transport.timestamps import utcnow
from .fsm import TERMINAL_STATES, AdmissionEvent, AdmissionState, transition
from .reconciler import SettlementReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACCEPTED_MESSAGE = "Bid accepted"

REJECTION_MESSAGES = {
    RejectReason.AUCTION_NOT_FOUND: "Auction not found",
    RejectReason.AUCTION_CLOSED: "Auction has ended",
    RejectReason.BID_TOO_LOW: "Bid must be higher than current bid",
    RejectReason.INSUFFICIENT_FUNDS: "Insufficient funds",
    RejectReason.USER_NOT_FOUND: "User not found",
    RejectReason.OUTBID: "Outbid by a concurrent bid, resubmit against the new price",
    RejectReason.BALANCE_AUTHORITY_UNAVAILABLE: "User service unavailable",
}

_COMMIT_REJECTIONS = {
    CommitStatus.STALE_VERSION: RejectReason.OUTBID,
    CommitStatus.BID_TOO_LOW: RejectReason.BID_TOO_LOW,
    CommitStatus.CLOSED: RejectReason.AUCTION_CLOSED,
    CommitStatus.NOT_FOUND: RejectReason.AUCTION_NOT_FOUND,
}

_RESERVE_REJECTIONS = {
    ReserveResult.INSUFFICIENT_FUNDS: RejectReason.INSUFFICIENT_FUNDS,
    ReserveResult.USER_NOT_FOUND: RejectReason.USER_NOT_FOUND,
    ReserveResult.UNAVAILABLE: RejectReason.BALANCE_AUTHORITY_UNAVAILABLE,
}


@dataclass(frozen=True)
class BidRequest:
    user_id: int
    auction_id: int
    amount: Decimal
    submitted_at: datetime | None = None


@dataclass(frozen=True)
class BidDecision:
    bid: Bid
    auction: Auction | None
    trail: tuple[AdmissionState, ...]

    @property
    def accepted(self) -> bool:
        return self.bid.outcome is BidOutcome.ACCEPTED

    @property
    def reason(self) -> RejectReason | None:
        return self.bid.reason

    @property
    def message(self) -> str:
        if self.reason is None:
            return ACCEPTED_MESSAGE
        return REJECTION_MESSAGES[self.reason]


@dataclass
class _Admission:
    request: BidRequest
    submitted_at: datetime
    state: AdmissionState = AdmissionState.RECEIVED
    trail: list[AdmissionState] = field(default_factory=lambda: [AdmissionState.RECEIVED])

    def advance(self, event: AdmissionEvent) -> None:
        self.state = transition(self.state, event)
        self.trail.append(self.state)


class BidCoordinator:
    """Runs one admission per bid.

    The auction store is touched at exactly two points: the validation read
    and the compare-and-swap commit. Neither is held across the remote
    balance calls, which are bounded by ``call_timeout_seconds``; a timeout
    counts as unavailable, never as success. Once funds are being reserved
    the admission runs in its own task, so a caller that goes away does not
    stop it from reaching a terminal state.
    """

    def __init__(
        self,
        store: AuctionStore,
        ledger: BidLedger,
        balance: BalanceAuthorityClient,
        reconciler: SettlementReconciler,
        alerts: AlertSink,
        *,
        call_timeout_seconds: float,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._balance = balance
        self._reconciler = reconciler
        self._alerts = alerts
        self._call_timeout = call_timeout_seconds
        self._clock = clock
        self._inflight: dict[str, asyncio.Task[BidDecision]] = {}
        self.outcomes: Counter[str] = Counter()

    async def submit(self, request: BidRequest) -> BidDecision:
        admission = _Admission(request=request, submitted_at=request.submitted_at or self._clock())
        try:
            auction = await self._store.get(request.auction_id)
        except AuctionNotFound:
            return self._reject(admission, RejectReason.AUCTION_NOT_FOUND, None)
        if auction.is_closed(self._clock()):
            return self._reject(admission, RejectReason.AUCTION_CLOSED, auction)
        if request.amount <= auction.current_price:
            return self._reject(admission, RejectReason.BID_TOO_LOW, auction)
        admission.advance(AdmissionEvent.VALIDATION_PASSED)

        key = correlation_id(
            {
                "auction_id": request.auction_id,
                "user_id": request.user_id,
                "amount": request.amount.normalize(),
                "expected_version": auction.version,
            }
        )
        task = self._inflight.get(key)
        if task is None or task.done():
            self._reconciler.cancel_release(key)
            task = asyncio.create_task(self._reserve_and_commit(admission, auction, key))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            logger.info("joining in-flight admission %s", key)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for in-flight admissions to reach a terminal state."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _reserve_and_commit(
        self, admission: _Admission, snapshot: Auction, key: str
    ) -> BidDecision:
        request = admission.request
        reservation = Reservation(
            correlation_id=key, user_id=request.user_id, amount=request.amount
        )
        reserved = await self._bounded(
            self._balance.check_and_reserve(request.user_id, request.amount, key),
            ReserveResult.UNAVAILABLE,
        )
        if reserved is not ReserveResult.RESERVED:
            if reserved is ReserveResult.UNAVAILABLE:
                # the hold may have landed before the authority went quiet
                self._reconciler.schedule_release(reservation, request.auction_id)
            return self._reject(admission, _RESERVE_REJECTIONS[reserved], snapshot)
        reservation.status = ReservationStatus.RESERVED
        admission.advance(AdmissionEvent.FUNDS_HELD)

        result = await self._store.try_commit_bid(
            request.auction_id, request.amount, snapshot.version
        )
        if not result.committed:
            admission.advance(AdmissionEvent.COMMIT_REFUSED)
            await self._compensate(admission, reservation)
            return self._reject(
                admission, _COMMIT_REJECTIONS[result.status], result.auction or snapshot
            )
        admission.advance(AdmissionEvent.COMMIT_SUCCEEDED)

        confirmed = await self._bounded(
            self._balance.confirm(key), ConfirmResult.UNAVAILABLE
        )
        if confirmed is ConfirmResult.CONFIRMED:
            reservation.status = ReservationStatus.CONFIRMED
            admission.advance(AdmissionEvent.DEBIT_CONFIRMED)
        else:
            logger.warning(
                "confirm for reservation %s returned %s, deferring to reconciler",
                key,
                confirmed.value,
            )
            self._reconciler.schedule_confirm(reservation, request.auction_id)

        bid = Bid(
            user_id=request.user_id,
            auction_id=request.auction_id,
            amount=request.amount,
            submitted_at=admission.submitted_at,
            outcome=BidOutcome.ACCEPTED,
            version=result.new_version,
            accepted_at=self._clock(),
            correlation_id=key,
        )
        try:
            await self._ledger.append(bid)
        except Exception as exc:
            logger.exception("ledger append failed for committed bid %s", key)
            await self._alerts.emit(
                "ledger_append_failed",
                f"committed bid {key} missing from ledger: {exc}",
                bid=bid.to_dict(),
            )
        admission.advance(
            AdmissionEvent.RECORDED
            if admission.state is AdmissionState.CONFIRMED
            else AdmissionEvent.CONFIRM_DEFERRED
        )
        self.outcomes[BidOutcome.ACCEPTED.value] += 1
        logger.info(
            "bid accepted auction=%s user=%s amount=%s version=%s",
            request.auction_id,
            request.user_id,
            request.amount,
            result.new_version,
        )
        return BidDecision(bid=bid, auction=result.auction, trail=tuple(admission.trail))

    async def _compensate(self, admission: _Admission, reservation: Reservation) -> None:
        released = await self._bounded(
            self._balance.release(reservation.correlation_id), ReleaseResult.UNAVAILABLE
        )
        if released is ReleaseResult.UNAVAILABLE:
            logger.warning(
                "release for reservation %s unavailable, deferring to reconciler",
                reservation.correlation_id,
            )
            self._reconciler.schedule_release(reservation, admission.request.auction_id)
            admission.advance(AdmissionEvent.RELEASE_DEFERRED)
            return
        reservation.status = ReservationStatus.RELEASED
        admission.advance(AdmissionEvent.HOLD_RELEASED)

    def _reject(
        self, admission: _Admission, reason: RejectReason, auction: Auction | None
    ) -> BidDecision:
        if admission.state not in TERMINAL_STATES:
            admission.advance(AdmissionEvent.REJECTED)
        request = admission.request
        bid = Bid(
            user_id=request.user_id,
            auction_id=request.auction_id,
            amount=request.amount,
            submitted_at=admission.submitted_at,
            outcome=BidOutcome.REJECTED,
            reason=reason,
        )
        self.outcomes[reason.value] += 1
        logger.info(
            "bid rejected auction=%s user=%s amount=%s reason=%s",
            request.auction_id,
            request.user_id,
            request.amount,
            reason.value,
        )
        return BidDecision(bid=bid, auction=auction, trail=tuple(admission.trail))

    async def _bounded(self, call: Awaitable[T], unavailable: T) -> T:
        try:
            return await asyncio.wait_for(call, timeout=self._call_timeout)
        except asyncio.TimeoutError:
            logger.warning("balance authority call timed out after %.3fs", self._call_timeout)
            return unavailable
