from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import InvalidOperation
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .admin import config as admin_config
from .admin import health as admin_health
from .admin import stats as admin_stats
from .auction.catalog import AuctionCatalog, SellerNotFound
from .auction.models import Auction, AuctionFilter, AuctionNotFound, Bid, RejectReason, to_amount
from .balance import api as balance_api
from .balance.client import build_balance_client
from .balance.local import BalanceAuthority
from .balance.models import BalanceAuthorityUnavailable
from .bidding.coordinator import BidCoordinator, BidRequest
from .bidding.reconciler import SettlementReconciler
from .config import ServerConfig, get_server_config
from .ledger.service import BidLedger
from .monitoring.alerts import AlertSink
from .storage import build_storage
from .transport.timestamps import utcnow
from .validation.validator import SchemaRegistry, ValidationError, get_schema_registry

REJECTION_STATUS = {
    RejectReason.BID_TOO_LOW: status.HTTP_400_BAD_REQUEST,
    RejectReason.INSUFFICIENT_FUNDS: status.HTTP_402_PAYMENT_REQUIRED,
    RejectReason.AUCTION_CLOSED: status.HTTP_403_FORBIDDEN,
    RejectReason.AUCTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectReason.USER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    RejectReason.OUTBID: status.HTTP_409_CONFLICT,
    RejectReason.BALANCE_AUTHORITY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    server_config = get_server_config()
    clock = utcnow
    schema_registry = get_schema_registry()
    storage = build_storage(server_config, clock)
    authority = BalanceAuthority() if server_config.balance_authority.backend == "local" else None
    balance = build_balance_client(server_config.balance_authority, authority)
    alerts = AlertSink(
        webhook_url=server_config.alerts.webhook_url,
        history_size=server_config.alerts.history_size,
    )
    reconciler = SettlementReconciler(
        balance,
        alerts,
        max_attempts=server_config.reconciliation.max_attempts,
        backoff_ms=server_config.reconciliation.backoff_ms,
        call_timeout_seconds=server_config.balance_authority.timeout_seconds,
    )
    ledger = BidLedger(storage)
    catalog = AuctionCatalog(storage, balance, clock=clock)
    coordinator = BidCoordinator(
        storage,
        ledger,
        balance,
        reconciler,
        alerts,
        call_timeout_seconds=server_config.balance_authority.timeout_seconds,
        clock=clock,
    )

    app.state.server_config = server_config
    app.state.schema_registry = schema_registry
    app.state.storage = storage
    app.state.balance_authority = authority
    app.state.balance_client = balance
    app.state.alerts = alerts
    app.state.reconciler = reconciler
    app.state.ledger = ledger
    app.state.catalog = catalog
    app.state.coordinator = coordinator
    app.state.start_time = datetime.now(timezone.utc)

    yield

    await coordinator.drain()
    await reconciler.shutdown()
    await balance.close()
    await storage.close()
    await alerts.close()


app = FastAPI(
    title="Auction Server",
    version="1.0.0",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(admin_health.router)
app.include_router(admin_stats.router)
app.include_router(admin_config.router)
# served only when the balance authority runs in-process (balance_authority.backend: local)
app.include_router(balance_api.router)


@app.exception_handler(RequestValidationError)
async def malformed_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": "Malformed request"})


# Dependency helpers ---------------------------------------------------------


def get_server_settings(request: Request) -> ServerConfig:
    return request.app.state.server_config


def get_schema_service(request: Request) -> SchemaRegistry:
    return request.app.state.schema_registry


def get_catalog(request: Request) -> AuctionCatalog:
    return request.app.state.catalog


def get_coordinator(request: Request) -> BidCoordinator:
    return request.app.state.coordinator


def get_ledger(request: Request) -> BidLedger:
    return request.app.state.ledger


# Routes ---------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root(settings: ServerConfig = Depends(get_server_settings)) -> dict[str, Any]:
    return {
        "service": "auction-server",
        "version": app.version,
        "storage_backend": settings.storage.backend,
        "balance_authority": {
            "backend": settings.balance_authority.backend,
            "protocol": settings.balance_authority.protocol,
        },
    }


@app.post("/auctions", tags=["auctions"], status_code=status.HTTP_201_CREATED)
async def create_auction(
    payload: dict[str, Any] = Body(...),
    catalog: AuctionCatalog = Depends(get_catalog),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    try:
        schemas.validate("create_auction", payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc.message)) from exc
    buy_now = payload.get("buy_now")
    try:
        auction = await catalog.create_auction(
            item=payload["item"],
            seller_id=int(payload["seller_id"]),
            duration_hours=float(payload["duration"]),
            start_bid=to_amount(payload["start_bid"]),
            buy_now=to_amount(buy_now) if buy_now is not None else None,
        )
    except SellerNotFound as exc:
        raise HTTPException(status_code=400, detail="Seller not found") from exc
    except BalanceAuthorityUnavailable as exc:
        raise HTTPException(status_code=503, detail="User service unavailable") from exc
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return render_auction(auction)


@app.get("/auctions/all", tags=["auctions"])
async def list_all_auctions(catalog: AuctionCatalog = Depends(get_catalog)) -> list[dict[str, Any]]:
    return [render_auction(auction) for auction in await catalog.list(AuctionFilter.ALL)]


@app.get("/auctions/list", tags=["auctions"])
async def list_active_auctions(
    catalog: AuctionCatalog = Depends(get_catalog),
) -> list[dict[str, Any]]:
    return [render_auction(auction) for auction in await catalog.list(AuctionFilter.ACTIVE_ONLY)]


@app.post("/auctions/bid", tags=["bids"])
async def place_bid(
    payload: dict[str, Any] = Body(...),
    coordinator: BidCoordinator = Depends(get_coordinator),
    schemas: SchemaRegistry = Depends(get_schema_service),
) -> dict[str, Any]:
    try:
        schemas.validate("bid_request", payload)
        request = BidRequest(
            user_id=int(payload["user_id"]),
            auction_id=int(payload["auction_id"]),
            amount=to_amount(payload["amount"]),
        )
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc.message)) from exc
    except (InvalidOperation, ValueError) as exc:
        raise HTTPException(status_code=400, detail="Invalid bid data") from exc
    decision = await coordinator.submit(request)
    if not decision.accepted:
        raise HTTPException(status_code=REJECTION_STATUS[decision.reason], detail=decision.message)
    return {
        "status": "success",
        "message": decision.message,
        "new_bid": float(decision.bid.amount),
    }


@app.get("/auctions/{auction_id}", tags=["auctions"])
async def get_auction(
    auction_id: int,
    catalog: AuctionCatalog = Depends(get_catalog),
) -> dict[str, Any]:
    try:
        auction = await catalog.get(auction_id)
    except AuctionNotFound as exc:
        raise HTTPException(status_code=404, detail="Auction not found") from exc
    return render_auction(auction)


@app.get("/auctions/{auction_id}/bids", tags=["bids"])
async def list_bids(
    auction_id: int,
    catalog: AuctionCatalog = Depends(get_catalog),
    ledger: BidLedger = Depends(get_ledger),
) -> list[dict[str, Any]]:
    try:
        await catalog.get(auction_id)
    except AuctionNotFound as exc:
        raise HTTPException(status_code=404, detail="Auction not found") from exc
    return [render_bid(bid) for bid in await ledger.list(auction_id)]


def render_auction(auction: Auction) -> dict[str, Any]:
    payload = auction.to_dict()
    payload["start_bid"] = float(auction.opening_price)
    payload["current_bid"] = float(auction.current_price)
    if auction.buy_now is not None:
        payload["buy_now"] = float(auction.buy_now)
    return payload


def render_bid(bid: Bid) -> dict[str, Any]:
    payload = bid.to_dict()
    payload["amount"] = float(bid.amount)
    return payload
