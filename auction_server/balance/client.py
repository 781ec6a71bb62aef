"""HTTP clients for the remote balance authority."""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Protocol

import httpx

from ..config import BalanceAuthorityConfig
from .local import BalanceAuthority, LocalBalanceClient
from .models import (
    BalanceAuthorityUnavailable,
    ConfirmResult,
    ReleaseResult,
    Reservation,
    ReservationStatus,
    ReserveResult,
)

logger = logging.getLogger(__name__)


class BalanceAuthorityClient(Protocol):
    async def check_and_reserve(
        self, user_id: int, amount: Decimal, correlation_id: str
    ) -> ReserveResult:
        """Hold funds; idempotent under correlation_id."""
        ...

    async def confirm(self, correlation_id: str) -> ConfirmResult:
        """Turn the hold into a permanent debit."""
        ...

    async def release(self, correlation_id: str) -> ReleaseResult:
        """Drop the hold; a no-op for holds that never landed."""
        ...

    async def user_exists(self, user_id: int) -> bool: ...

    async def close(self) -> None: ...


class HttpBalanceClient:
    """Reserve/confirm/release over the authority's reservation endpoints.

    Timeouts, transport errors and 5xx answers all map to ``UNAVAILABLE``;
    nothing short of an explicit success status is read as success.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._timeout = timeout_seconds

    async def close(self) -> None:
        await self._client.aclose()

    async def check_and_reserve(
        self, user_id: int, amount: Decimal, correlation_id: str
    ) -> ReserveResult:
        payload = {"reservation_id": correlation_id, "user_id": user_id, "amount": str(amount)}
        response = await self._send("POST", "/users/reservations", json=payload)
        if response is None:
            return ReserveResult.UNAVAILABLE
        if response.status_code == httpx.codes.OK:
            return ReserveResult.RESERVED
        if response.status_code == httpx.codes.PAYMENT_REQUIRED:
            return ReserveResult.INSUFFICIENT_FUNDS
        if response.status_code == httpx.codes.NOT_FOUND:
            return ReserveResult.USER_NOT_FOUND
        self._log_unexpected("reserve", correlation_id, response)
        return ReserveResult.UNAVAILABLE

    async def confirm(self, correlation_id: str) -> ConfirmResult:
        response = await self._send("POST", f"/users/reservations/{correlation_id}/confirm")
        if response is None:
            return ConfirmResult.UNAVAILABLE
        if response.status_code == httpx.codes.OK:
            return ConfirmResult.CONFIRMED
        if response.status_code == httpx.codes.NOT_FOUND:
            return ConfirmResult.UNKNOWN_RESERVATION
        self._log_unexpected("confirm", correlation_id, response)
        return ConfirmResult.UNAVAILABLE

    async def release(self, correlation_id: str) -> ReleaseResult:
        response = await self._send("DELETE", f"/users/reservations/{correlation_id}")
        if response is None:
            return ReleaseResult.UNAVAILABLE
        if response.status_code == httpx.codes.OK:
            try:
                return ReleaseResult(response.json().get("status"))
            except ValueError:
                self._log_unexpected("release", correlation_id, response)
                return ReleaseResult.UNAVAILABLE
        self._log_unexpected("release", correlation_id, response)
        return ReleaseResult.UNAVAILABLE

    async def user_exists(self, user_id: int) -> bool:
        response = await self._send("GET", f"/users/{user_id}")
        if response is None or response.status_code >= 500:
            raise BalanceAuthorityUnavailable("balance authority unreachable")
        return response.status_code == httpx.codes.OK

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response | None:
        try:
            return await self._client.request(method, url, timeout=self._timeout, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("balance authority %s %s failed: %s", method, url, exc)
            return None

    def _log_unexpected(self, operation: str, correlation_id: str, response: httpx.Response) -> None:
        logger.error(
            "unexpected balance authority answer to %s (%s): status %s body %s",
            operation,
            correlation_id,
            response.status_code,
            response.text[:200],
        )


class LegacyBalanceClient:
    """Fallback for authorities exposing only check_balance/update_balance.

    A reservation here is an immediate debit that ``release`` refunds, so funds
    move before eligibility is re-validated at commit time. Each correlation id
    is recorded as ``REQUESTED`` before the debit is sent; an id whose debit
    outcome is unknown is never debited again and never reported released, so
    it stays with the reconciler until someone settles it.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._timeout = timeout_seconds
        self._debits: dict[str, Reservation] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def close(self) -> None:
        await self._client.aclose()

    def _lock_for(self, correlation_id: str) -> asyncio.Lock:
        return self._locks.setdefault(correlation_id, asyncio.Lock())

    async def check_and_reserve(
        self, user_id: int, amount: Decimal, correlation_id: str
    ) -> ReserveResult:
        async with self._lock_for(correlation_id):
            existing = self._debits.get(correlation_id)
            if existing is not None:
                if existing.status is ReservationStatus.REQUESTED:
                    logger.warning(
                        "legacy debit for %s has an unknown outcome, refusing to debit again",
                        correlation_id,
                    )
                    return ReserveResult.UNAVAILABLE
                if existing.status is not ReservationStatus.RELEASED:
                    return ReserveResult.RESERVED
            try:
                check = await self._client.get(
                    "/users/check_balance",
                    params={"user_id": user_id, "amount": str(amount)},
                    timeout=self._timeout,
                )
                if check.status_code == httpx.codes.NOT_FOUND:
                    return ReserveResult.USER_NOT_FOUND
                check.raise_for_status()
                if not check.json().get("canBid"):
                    return ReserveResult.INSUFFICIENT_FUNDS
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("legacy balance check for %s failed: %s", correlation_id, exc)
                return ReserveResult.UNAVAILABLE

            debit = Reservation(
                correlation_id=correlation_id,
                user_id=user_id,
                amount=amount,
                status=ReservationStatus.REQUESTED,
            )
            self._debits[correlation_id] = debit
            try:
                response = await self._client.put(
                    "/users/update_balance",
                    json={"user_id": user_id, "amount": float(-amount)},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                logger.warning("legacy debit for %s lost its answer: %s", correlation_id, exc)
                return ReserveResult.UNAVAILABLE
            if response.status_code == httpx.codes.BAD_REQUEST:
                del self._debits[correlation_id]
                return ReserveResult.INSUFFICIENT_FUNDS
            if response.status_code != httpx.codes.OK:
                logger.error(
                    "legacy debit for %s answered %s", correlation_id, response.status_code
                )
                return ReserveResult.UNAVAILABLE
            debit.status = ReservationStatus.RESERVED
            return ReserveResult.RESERVED

    async def confirm(self, correlation_id: str) -> ConfirmResult:
        async with self._lock_for(correlation_id):
            debit = self._debits.get(correlation_id)
            if debit is None or debit.status in {
                ReservationStatus.REQUESTED,
                ReservationStatus.RELEASED,
            }:
                return ConfirmResult.UNKNOWN_RESERVATION
            debit.status = ReservationStatus.CONFIRMED
            return ConfirmResult.CONFIRMED

    async def release(self, correlation_id: str) -> ReleaseResult:
        async with self._lock_for(correlation_id):
            debit = self._debits.get(correlation_id)
            if debit is None or debit.status is ReservationStatus.RELEASED:
                return ReleaseResult.ALREADY_RELEASED
            if debit.status is ReservationStatus.CONFIRMED:
                return ReleaseResult.ALREADY_CONFIRMED
            if debit.status is ReservationStatus.REQUESTED:
                # the debit may or may not have landed
                logger.warning(
                    "legacy debit for %s has an unknown outcome, cannot refund", correlation_id
                )
                return ReleaseResult.UNAVAILABLE
            try:
                refund = await self._client.put(
                    "/users/update_balance",
                    json={"user_id": debit.user_id, "amount": float(debit.amount)},
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                logger.warning("legacy refund for %s failed: %s", correlation_id, exc)
                return ReleaseResult.UNAVAILABLE
            if refund.status_code != httpx.codes.OK:
                logger.error(
                    "legacy refund for %s answered %s", correlation_id, refund.status_code
                )
                return ReleaseResult.UNAVAILABLE
            debit.status = ReservationStatus.RELEASED
            return ReleaseResult.RELEASED

    async def user_exists(self, user_id: int) -> bool:
        try:
            response = await self._client.get(f"/users/{user_id}", timeout=self._timeout)
        except httpx.HTTPError as exc:
            raise BalanceAuthorityUnavailable("balance authority unreachable") from exc
        if response.status_code >= 500:
            raise BalanceAuthorityUnavailable("balance authority unreachable")
        return response.status_code == httpx.codes.OK


def build_balance_client(
    config: BalanceAuthorityConfig,
    authority: BalanceAuthority | None = None,
) -> BalanceAuthorityClient:
    if config.backend == "local":
        if authority is None:
            raise ValueError("local balance backend requires an in-process authority")
        return LocalBalanceClient(authority)
    if config.backend != "http":
        raise ValueError(f"unknown balance authority backend {config.backend}")
    if config.protocol == "legacy":
        logger.warning(
            "balance authority in legacy mode: funds are debited before commit "
            "and refunded on loss"
        )
        return LegacyBalanceClient(base_url=config.base_url, timeout_seconds=config.timeout_seconds)
    return HttpBalanceClient(base_url=config.base_url, timeout_seconds=config.timeout_seconds)
