"""Types shared by the balance authority and its clients."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any


class BalanceAuthorityUnavailable(RuntimeError):
    """Raised when the balance authority cannot be reached for a plain query."""


class UserNotFound(KeyError):
    """Raised by the authority for an unknown user id."""


class UserAlreadyExists(ValueError):
    """Raised when an email address is already registered."""


class InsufficientFunds(ValueError):
    """Raised by the legacy balance update when a debit would go negative."""


class ReserveResult(str, Enum):
    RESERVED = "reserved"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    USER_NOT_FOUND = "user_not_found"
    UNAVAILABLE = "unavailable"


class ReleaseResult(str, Enum):
    RELEASED = "released"
    ALREADY_RELEASED = "already_released"
    ALREADY_CONFIRMED = "already_confirmed"
    UNAVAILABLE = "unavailable"


class ConfirmResult(str, Enum):
    CONFIRMED = "confirmed"
    UNKNOWN_RESERVATION = "unknown_reservation"
    UNAVAILABLE = "unavailable"


class ReservationStatus(str, Enum):
    REQUESTED = "requested"
    RESERVED = "reserved"
    CONFIRMED = "confirmed"
    RELEASED = "released"


@dataclass
class Reservation:
    correlation_id: str
    user_id: int
    amount: Decimal
    status: ReservationStatus = ReservationStatus.REQUESTED

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.correlation_id,
            "user_id": self.user_id,
            "amount": str(self.amount),
            "status": self.status.value,
        }


@dataclass
class User:
    user_id: int
    name: str
    email: str
    balance: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.user_id,
            "name": self.name,
            "email": self.email,
            "balance": float(self.balance),
        }
