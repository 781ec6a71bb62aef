"""In-process balance authority with idempotent fund reservations."""

from __future__ import annotations

import asyncio
import logging
from copy import copy
from decimal import Decimal

from .models import (
    ConfirmResult,
    InsufficientFunds,
    ReleaseResult,
    Reservation,
    ReservationStatus,
    ReserveResult,
    User,
    UserAlreadyExists,
    UserNotFound,
)

logger = logging.getLogger(__name__)


class BalanceAuthority:
    """System of record for user funds.

    ``available = balance - held`` where ``held`` sums the user's reservations
    still in the reserved state. Every reservation operation is keyed by its
    correlation id so retries never move money twice.
    """

    def __init__(self) -> None:
        self._users: dict[int, User] = {}
        self._reservations: dict[str, Reservation] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def create_user(self, name: str, email: str, balance: Decimal) -> User:
        async with self._lock:
            if any(user.email == email for user in self._users.values()):
                raise UserAlreadyExists(f"email {email} already in use")
            user = User(user_id=self._next_id, name=name, email=email, balance=balance)
            self._users[user.user_id] = user
            self._next_id += 1
            return copy(user)

    async def get_user(self, user_id: int) -> User:
        async with self._lock:
            return copy(self._require_user(user_id))

    async def list_users(self) -> list[User]:
        async with self._lock:
            return [copy(user) for user in self._users.values()]

    async def user_exists(self, user_id: int) -> bool:
        async with self._lock:
            return user_id in self._users

    async def available_balance(self, user_id: int) -> Decimal:
        async with self._lock:
            return self._available(self._require_user(user_id))

    async def get_reservation(self, correlation_id: str) -> Reservation | None:
        async with self._lock:
            reservation = self._reservations.get(correlation_id)
            return copy(reservation) if reservation else None

    async def reserve(self, correlation_id: str, user_id: int, amount: Decimal) -> ReserveResult:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return ReserveResult.USER_NOT_FOUND
            existing = self._reservations.get(correlation_id)
            if existing is not None and existing.status in {
                ReservationStatus.RESERVED,
                ReservationStatus.CONFIRMED,
            }:
                return ReserveResult.RESERVED
            if self._available(user) < amount:
                return ReserveResult.INSUFFICIENT_FUNDS
            self._reservations[correlation_id] = Reservation(
                correlation_id=correlation_id,
                user_id=user_id,
                amount=amount,
                status=ReservationStatus.RESERVED,
            )
            logger.info("reserved %s for user %s (%s)", amount, user_id, correlation_id)
            return ReserveResult.RESERVED

    async def confirm(self, correlation_id: str) -> ConfirmResult:
        async with self._lock:
            reservation = self._reservations.get(correlation_id)
            if reservation is None or reservation.status is ReservationStatus.RELEASED:
                return ConfirmResult.UNKNOWN_RESERVATION
            if reservation.status is ReservationStatus.CONFIRMED:
                return ConfirmResult.CONFIRMED
            user = self._users[reservation.user_id]
            user.balance -= reservation.amount
            reservation.status = ReservationStatus.CONFIRMED
            logger.info(
                "confirmed %s debit for user %s (%s)",
                reservation.amount,
                reservation.user_id,
                correlation_id,
            )
            return ConfirmResult.CONFIRMED

    async def release(self, correlation_id: str) -> ReleaseResult:
        async with self._lock:
            reservation = self._reservations.get(correlation_id)
            if reservation is None or reservation.status is ReservationStatus.RELEASED:
                return ReleaseResult.ALREADY_RELEASED
            if reservation.status is ReservationStatus.CONFIRMED:
                return ReleaseResult.ALREADY_CONFIRMED
            reservation.status = ReservationStatus.RELEASED
            logger.info("released hold for user %s (%s)", reservation.user_id, correlation_id)
            return ReleaseResult.RELEASED

    async def check_balance(self, user_id: int, amount: Decimal) -> tuple[bool, Decimal]:
        async with self._lock:
            user = self._require_user(user_id)
            available = self._available(user)
            return available >= amount, available

    async def update_balance(self, user_id: int, delta: Decimal) -> User:
        async with self._lock:
            user = self._require_user(user_id)
            if self._available(user) + delta < 0:
                raise InsufficientFunds(f"user {user_id} cannot cover {-delta}")
            user.balance += delta
            return copy(user)

    def _require_user(self, user_id: int) -> User:
        try:
            return self._users[user_id]
        except KeyError as exc:
            raise UserNotFound(f"user {user_id} not found") from exc

    def _available(self, user: User) -> Decimal:
        held = sum(
            (
                reservation.amount
                for reservation in self._reservations.values()
                if reservation.user_id == user.user_id
                and reservation.status is ReservationStatus.RESERVED
            ),
            Decimal("0"),
        )
        return user.balance - held


class LocalBalanceClient:
    """Balance authority client backed by an in-process authority."""

    def __init__(self, authority: BalanceAuthority) -> None:
        self._authority = authority

    async def check_and_reserve(
        self, user_id: int, amount: Decimal, correlation_id: str
    ) -> ReserveResult:
        return await self._authority.reserve(correlation_id, user_id, amount)

    async def confirm(self, correlation_id: str) -> ConfirmResult:
        return await self._authority.confirm(correlation_id)

    async def release(self, correlation_id: str) -> ReleaseResult:
        return await self._authority.release(correlation_id)

    async def user_exists(self, user_id: int) -> bool:
        return await self._authority.user_exists(user_id)

    async def close(self) -> None:
        return None
