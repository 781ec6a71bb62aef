"""Bid admission finite state machine."""

from __future__ import annotations

from enum import Enum


class InvalidTransition(ValueError):
    """Raised when an admission step is attempted out of order."""


class AdmissionState(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    FUNDS_RESERVED = "funds_reserved"
    COMMITTED = "committed"
    COMPENSATING = "compensating"
    CONFIRMED = "confirmed"
    RELEASED = "released"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class AdmissionEvent(str, Enum):
    VALIDATION_PASSED = "validation_passed"
    FUNDS_HELD = "funds_held"
    COMMIT_SUCCEEDED = "commit_succeeded"
    COMMIT_REFUSED = "commit_refused"
    DEBIT_CONFIRMED = "debit_confirmed"
    CONFIRM_DEFERRED = "confirm_deferred"
    HOLD_RELEASED = "hold_released"
    RELEASE_DEFERRED = "release_deferred"
    RECORDED = "recorded"
    REJECTED = "rejected"


TERMINAL_STATES = frozenset({AdmissionState.ACCEPTED, AdmissionState.REJECTED})

_TRANSITIONS = {
    (AdmissionState.RECEIVED, AdmissionEvent.VALIDATION_PASSED): AdmissionState.VALIDATED,
    (AdmissionState.RECEIVED, AdmissionEvent.REJECTED): AdmissionState.REJECTED,
    (AdmissionState.VALIDATED, AdmissionEvent.FUNDS_HELD): AdmissionState.FUNDS_RESERVED,
    (AdmissionState.VALIDATED, AdmissionEvent.REJECTED): AdmissionState.REJECTED,
    (AdmissionState.FUNDS_RESERVED, AdmissionEvent.COMMIT_SUCCEEDED): AdmissionState.COMMITTED,
    (AdmissionState.FUNDS_RESERVED, AdmissionEvent.COMMIT_REFUSED): AdmissionState.COMPENSATING,
    (AdmissionState.COMMITTED, AdmissionEvent.DEBIT_CONFIRMED): AdmissionState.CONFIRMED,
    # confirmation continues in the background; the bid is already won
    (AdmissionState.COMMITTED, AdmissionEvent.CONFIRM_DEFERRED): AdmissionState.ACCEPTED,
    (AdmissionState.CONFIRMED, AdmissionEvent.RECORDED): AdmissionState.ACCEPTED,
    (AdmissionState.COMPENSATING, AdmissionEvent.HOLD_RELEASED): AdmissionState.RELEASED,
    (AdmissionState.COMPENSATING, AdmissionEvent.RELEASE_DEFERRED): AdmissionState.REJECTED,
    (AdmissionState.RELEASED, AdmissionEvent.REJECTED): AdmissionState.REJECTED,
}


def transition(current: AdmissionState, event: AdmissionEvent) -> AdmissionState:
    try:
        return _TRANSITIONS[(current, event)]
    except KeyError as exc:
        raise InvalidTransition(f"invalid transition from {current} via {event}") from exc
