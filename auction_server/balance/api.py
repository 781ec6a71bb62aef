"""HTTP surface of the balance authority."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status

from ..auction.models import to_amount
from ..validation.validator import SchemaRegistry, ValidationError, get_schema_registry
from .local import BalanceAuthority
from .models import (
    ConfirmResult,
    InsufficientFunds,
    ReserveResult,
    UserAlreadyExists,
    UserNotFound,
)

router = APIRouter(prefix="/users", tags=["balance"])


def _get_authority(request: Request) -> BalanceAuthority:
    authority = getattr(request.app.state, "balance_authority", None)
    if authority is None:
        raise HTTPException(status_code=404, detail="balance authority is not hosted here")
    return authority


def _validated(schemas: SchemaRegistry, schema: str, payload: dict[str, Any]) -> None:
    try:
        schemas.validate(schema, payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc.message)) from exc


def _parse_amount(value: Any) -> Decimal:
    try:
        return to_amount(value)
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=400, detail="invalid amount") from exc


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: dict[str, Any] = Body(...),
    authority: BalanceAuthority = Depends(_get_authority),
    schemas: SchemaRegistry = Depends(get_schema_registry),
) -> dict[str, Any]:
    _validated(schemas, "create_user", payload)
    try:
        user = await authority.create_user(
            payload["name"],
            payload["email"],
            _parse_amount(payload.get("balance", 0)),
        )
    except UserAlreadyExists as exc:
        raise HTTPException(status_code=409, detail="Email already in use") from exc
    return user.to_dict()


@router.get("/all")
async def list_users(authority: BalanceAuthority = Depends(_get_authority)) -> list[dict[str, Any]]:
    return [user.to_dict() for user in await authority.list_users()]


@router.get("/check_balance")
async def check_balance(
    user_id: int = Query(...),
    amount: str = Query(...),
    authority: BalanceAuthority = Depends(_get_authority),
) -> dict[str, Any]:
    try:
        can_bid, balance = await authority.check_balance(user_id, _parse_amount(amount))
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    return {"canBid": can_bid, "balance": float(balance)}


@router.put("/update_balance")
async def update_balance(
    payload: dict[str, Any] = Body(...),
    authority: BalanceAuthority = Depends(_get_authority),
    schemas: SchemaRegistry = Depends(get_schema_registry),
) -> dict[str, Any]:
    _validated(schemas, "balance_update", payload)
    try:
        user = await authority.update_balance(payload["user_id"], _parse_amount(payload["amount"]))
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    except InsufficientFunds as exc:
        raise HTTPException(status_code=400, detail="Insufficient funds") from exc
    return user.to_dict()


@router.post("/reservations")
async def reserve(
    payload: dict[str, Any] = Body(...),
    authority: BalanceAuthority = Depends(_get_authority),
    schemas: SchemaRegistry = Depends(get_schema_registry),
) -> dict[str, Any]:
    _validated(schemas, "reservation_request", payload)
    amount = _parse_amount(payload["amount"])
    if amount <= 0:
        raise HTTPException(status_code=400, detail="amount must be positive")
    reservation_id = payload["reservation_id"]
    result = await authority.reserve(reservation_id, payload["user_id"], amount)
    if result is ReserveResult.USER_NOT_FOUND:
        raise HTTPException(status_code=404, detail="User not found")
    if result is ReserveResult.INSUFFICIENT_FUNDS:
        raise HTTPException(status_code=402, detail="Insufficient funds")
    return {"reservation_id": reservation_id, "status": result.value}


@router.post("/reservations/{reservation_id}/confirm")
async def confirm(
    reservation_id: str,
    authority: BalanceAuthority = Depends(_get_authority),
) -> dict[str, Any]:
    result = await authority.confirm(reservation_id)
    if result is ConfirmResult.UNKNOWN_RESERVATION:
        raise HTTPException(status_code=404, detail="Reservation not found")
    return {"reservation_id": reservation_id, "status": result.value}


@router.delete("/reservations/{reservation_id}")
async def release(
    reservation_id: str,
    authority: BalanceAuthority = Depends(_get_authority),
) -> dict[str, Any]:
    result = await authority.release(reservation_id)
    return {"reservation_id": reservation_id, "status": result.value}


@router.get("/{user_id}")
async def get_user(
    user_id: int,
    authority: BalanceAuthority = Depends(_get_authority),
) -> dict[str, Any]:
    try:
        user = await authority.get_user(user_id)
    except UserNotFound as exc:
        raise HTTPException(status_code=404, detail="User not found") from exc
    return user.to_dict()
