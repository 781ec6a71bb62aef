"""Background settlement of reservations the admission path could not finish."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable

from ..balance.client import BalanceAuthorityClient
from ..balance.models import ConfirmResult, ReleaseResult, Reservation, ReservationStatus
from ..monitoring.alerts import AlertSink
from ..transport.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)


class SettlementAction(str, Enum):
    CONFIRM = "confirm"
    RELEASE = "release"


class AttemptOutcome(str, Enum):
    SETTLED = "settled"
    RETRY = "retry"
    FATAL = "fatal"


@dataclass
class PendingSettlement:
    action: SettlementAction
    reservation: Reservation
    auction_id: int
    scheduled_at: datetime
    attempts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reservation": self.reservation.to_dict(),
            "auction_id": self.auction_id,
            "scheduled_at": format_timestamp(self.scheduled_at),
            "attempts": self.attempts,
        }


class SettlementReconciler:
    """Retries confirm/release with exponential backoff until settled or abandoned.

    A confirm that never succeeds leaves an accepted bid without its debit; a
    release that never succeeds leaves a user's funds on hold. Both end in an
    operational alert, never in a rollback of the accepted bid.
    """

    def __init__(
        self,
        balance: BalanceAuthorityClient,
        alerts: AlertSink,
        *,
        max_attempts: int,
        backoff_ms: int,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        call_timeout_seconds: float | None = None,
    ) -> None:
        self._balance = balance
        self._alerts = alerts
        self._max_attempts = max_attempts
        self._backoff_ms = backoff_ms
        self._sleep = sleep
        self._call_timeout = call_timeout_seconds
        self._pending: dict[str, PendingSettlement] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def schedule_confirm(self, reservation: Reservation, auction_id: int) -> None:
        self._schedule(SettlementAction.CONFIRM, reservation, auction_id)

    def schedule_release(self, reservation: Reservation, auction_id: int) -> None:
        self._schedule(SettlementAction.RELEASE, reservation, auction_id)

    def pending(self) -> list[PendingSettlement]:
        return list(self._pending.values())

    def cancel_release(self, correlation_id: str) -> bool:
        """Withdraw a queued release because the same reservation is being retried."""
        key = f"{SettlementAction.RELEASE.value}:{correlation_id}"
        task = self._tasks.get(key)
        if task is None or task.done():
            return False
        task.cancel()
        self._pending.pop(key, None)
        logger.info("withdrew queued release for reservation %s", correlation_id)
        return True

    async def drain(self) -> None:
        """Wait for every scheduled settlement to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        for settlement in self._pending.values():
            logger.warning(
                "shutdown with unsettled %s for reservation %s",
                settlement.action.value,
                settlement.reservation.correlation_id,
            )
        for task in list(self._tasks.values()):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    def _schedule(self, action: SettlementAction, reservation: Reservation, auction_id: int) -> None:
        key = f"{action.value}:{reservation.correlation_id}"
        if key in self._pending:
            return
        settlement = PendingSettlement(
            action=action,
            reservation=reservation,
            auction_id=auction_id,
            scheduled_at=utcnow(),
        )
        self._pending[key] = settlement
        task = asyncio.create_task(self._run(key, settlement))
        self._tasks[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))

    def _forget(self, key: str, task: asyncio.Task) -> None:
        if self._tasks.get(key) is task:
            del self._tasks[key]

    async def _run(self, key: str, settlement: PendingSettlement) -> None:
        correlation_id = settlement.reservation.correlation_id
        try:
            while settlement.attempts < self._max_attempts:
                await self._sleep(self._backoff_ms * (2 ** settlement.attempts) / 1000)
                settlement.attempts += 1
                try:
                    outcome = await asyncio.wait_for(
                        self._attempt(settlement), timeout=self._call_timeout
                    )
                except asyncio.TimeoutError:
                    logger.warning(
                        "%s attempt for reservation %s timed out", settlement.action.value, correlation_id
                    )
                    outcome = AttemptOutcome.RETRY
                except Exception:
                    logger.exception(
                        "%s attempt for reservation %s raised", settlement.action.value, correlation_id
                    )
                    outcome = AttemptOutcome.RETRY
                if outcome is AttemptOutcome.SETTLED:
                    settlement.reservation.status = (
                        ReservationStatus.CONFIRMED
                        if settlement.action is SettlementAction.CONFIRM
                        else ReservationStatus.RELEASED
                    )
                    logger.info(
                        "%s settled for reservation %s after %d attempt(s)",
                        settlement.action.value,
                        correlation_id,
                        settlement.attempts,
                    )
                    return
                if outcome is AttemptOutcome.FATAL:
                    await self._alerts.emit(
                        f"{settlement.action.value}_rejected",
                        f"balance authority has no live reservation {correlation_id}",
                        **settlement.to_dict(),
                    )
                    return
                logger.warning(
                    "%s attempt %d/%d for reservation %s unavailable",
                    settlement.action.value,
                    settlement.attempts,
                    self._max_attempts,
                    correlation_id,
                )
            await self._alerts.emit(
                f"{settlement.action.value}_abandoned",
                f"gave up on {settlement.action.value} for reservation {correlation_id}",
                **settlement.to_dict(),
            )
        finally:
            if self._pending.get(key) is settlement:
                del self._pending[key]

    async def _attempt(self, settlement: PendingSettlement) -> AttemptOutcome:
        correlation_id = settlement.reservation.correlation_id
        if settlement.action is SettlementAction.CONFIRM:
            result = await self._balance.confirm(correlation_id)
            if result is ConfirmResult.CONFIRMED:
                return AttemptOutcome.SETTLED
            if result is ConfirmResult.UNKNOWN_RESERVATION:
                return AttemptOutcome.FATAL
            return AttemptOutcome.RETRY
        released = await self._balance.release(correlation_id)
        if released is ReleaseResult.UNAVAILABLE:
            return AttemptOutcome.RETRY
        if released is ReleaseResult.ALREADY_CONFIRMED:
            return AttemptOutcome.FATAL
        return AttemptOutcome.SETTLED
