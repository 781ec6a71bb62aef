"""Unit tests for background settlement of confirms and releases."""

from __future__ import annotations

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, call

import pytest

from auction_server.balance.models import (
    ConfirmResult,
    ReleaseResult,
    Reservation,
    ReservationStatus,
)
from auction_server.bidding.reconciler import SettlementReconciler
from auction_server.monitoring.alerts import AlertSink


@pytest.fixture
def balance():
    balance = AsyncMock()
    balance.confirm = AsyncMock(return_value=ConfirmResult.CONFIRMED)
    balance.release = AsyncMock(return_value=ReleaseResult.RELEASED)
    return balance


@pytest.fixture
def alerts():
    return AlertSink()


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def reconciler(balance, alerts, sleep):
    return SettlementReconciler(balance, alerts, max_attempts=3, backoff_ms=200, sleep=sleep)


def _reservation(status: ReservationStatus = ReservationStatus.RESERVED) -> Reservation:
    return Reservation(correlation_id="r1", user_id=1, amount=Decimal("120"), status=status)


class TestSettlementRetries:
    @pytest.mark.asyncio
    async def test_confirm_retries_with_backoff(self, reconciler, balance, alerts, sleep):
        balance.confirm.side_effect = [
            ConfirmResult.UNAVAILABLE,
            ConfirmResult.UNAVAILABLE,
            ConfirmResult.CONFIRMED,
        ]
        reservation = _reservation()

        reconciler.schedule_confirm(reservation, auction_id=1)
        await reconciler.drain()

        assert sleep.await_args_list == [call(0.2), call(0.4), call(0.8)]
        assert balance.confirm.await_count == 3
        assert reservation.status is ReservationStatus.CONFIRMED
        assert reconciler.pending() == []
        assert alerts.recent() == []

    @pytest.mark.asyncio
    async def test_release_settles_when_already_released(self, reconciler, balance):
        balance.release.return_value = ReleaseResult.ALREADY_RELEASED
        reservation = _reservation()

        reconciler.schedule_release(reservation, auction_id=1)
        await reconciler.drain()

        assert reservation.status is ReservationStatus.RELEASED
        balance.release.assert_awaited_once_with("r1")

    @pytest.mark.asyncio
    async def test_exhaustion_raises_alert(self, reconciler, balance, alerts):
        """Funds left on hold after every attempt surface as an operational alert."""
        balance.release.return_value = ReleaseResult.UNAVAILABLE

        reconciler.schedule_release(_reservation(), auction_id=7)
        await reconciler.drain()

        assert balance.release.await_count == 3
        [alert] = alerts.recent()
        assert alert.kind == "release_abandoned"
        assert alert.context["auction_id"] == 7
        assert alert.context["attempts"] == 3
        assert reconciler.pending() == []

    @pytest.mark.asyncio
    async def test_raising_attempt_is_retried(self, reconciler, balance):
        balance.confirm.side_effect = [RuntimeError("connection reset"), ConfirmResult.CONFIRMED]
        reservation = _reservation()

        reconciler.schedule_confirm(reservation, auction_id=1)
        await reconciler.drain()

        assert balance.confirm.await_count == 2
        assert reservation.status is ReservationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_silent_authority_attempt_times_out(self, balance, alerts, sleep):
        calls = []

        async def hang_once(correlation_id):
            calls.append(correlation_id)
            if len(calls) == 1:
                await asyncio.Event().wait()
            return ConfirmResult.CONFIRMED

        balance.confirm.side_effect = hang_once
        reconciler = SettlementReconciler(
            balance, alerts, max_attempts=3, backoff_ms=200, sleep=sleep, call_timeout_seconds=0.05
        )
        reservation = _reservation()

        reconciler.schedule_confirm(reservation, auction_id=1)
        await asyncio.wait_for(reconciler.drain(), timeout=5)

        assert calls == ["r1", "r1"]
        assert reservation.status is ReservationStatus.CONFIRMED
        assert reconciler.pending() == []
        assert alerts.recent() == []

    @pytest.mark.asyncio
    async def test_unknown_reservation_on_confirm_is_fatal(self, reconciler, balance, alerts):
        balance.confirm.return_value = ConfirmResult.UNKNOWN_RESERVATION

        reconciler.schedule_confirm(_reservation(), auction_id=1)
        await reconciler.drain()

        balance.confirm.assert_awaited_once_with("r1")
        assert [alert.kind for alert in alerts.recent()] == ["confirm_rejected"]

    @pytest.mark.asyncio
    async def test_release_of_confirmed_debit_is_fatal(self, reconciler, balance, alerts):
        balance.release.return_value = ReleaseResult.ALREADY_CONFIRMED

        reconciler.schedule_release(_reservation(), auction_id=1)
        await reconciler.drain()

        assert [alert.kind for alert in alerts.recent()] == ["release_rejected"]


class TestScheduling:
    @pytest.mark.asyncio
    async def test_duplicate_schedule_is_ignored(self, reconciler, balance):
        reservation = _reservation()
        reconciler.schedule_release(reservation, auction_id=1)
        reconciler.schedule_release(reservation, auction_id=1)

        assert len(reconciler.pending()) == 1
        await reconciler.drain()
        balance.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cancel_queued_release(self, balance, alerts):
        gate = asyncio.Event()

        async def blocked_sleep(delay: float) -> None:
            await gate.wait()

        reconciler = SettlementReconciler(
            balance, alerts, max_attempts=3, backoff_ms=200, sleep=blocked_sleep
        )
        reconciler.schedule_release(_reservation(), auction_id=1)
        await asyncio.sleep(0)

        assert reconciler.cancel_release("r1")
        await reconciler.drain()

        balance.release.assert_not_awaited()
        assert reconciler.pending() == []
        assert not reconciler.cancel_release("r1")

    @pytest.mark.asyncio
    async def test_pending_is_reported(self, balance, alerts):
        gate = asyncio.Event()

        async def blocked_sleep(delay: float) -> None:
            await gate.wait()

        reconciler = SettlementReconciler(
            balance, alerts, max_attempts=3, backoff_ms=200, sleep=blocked_sleep
        )
        reconciler.schedule_confirm(_reservation(), auction_id=4)

        [pending] = reconciler.pending()
        assert pending.to_dict()["action"] == "confirm"
        assert pending.to_dict()["reservation"]["reservation_id"] == "r1"

        await reconciler.shutdown()
