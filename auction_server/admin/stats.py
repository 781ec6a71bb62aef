"""Operational stats endpoint."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request

from ..auction.catalog import AuctionCatalog
from ..auction.models import AuctionFilter
from ..bidding.coordinator import BidCoordinator
from ..bidding.reconciler import SettlementReconciler
from ..ledger.service import BidLedger
from ..monitoring.alerts import AlertSink

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_catalog(request: Request) -> AuctionCatalog:
    return request.app.state.catalog


def _get_ledger(request: Request) -> BidLedger:
    return request.app.state.ledger


def _get_coordinator(request: Request) -> BidCoordinator:
    return request.app.state.coordinator


def _get_reconciler(request: Request) -> SettlementReconciler:
    return request.app.state.reconciler


def _get_alerts(request: Request) -> AlertSink:
    return request.app.state.alerts


@router.get("/stats")
async def stats(
    catalog: AuctionCatalog = Depends(_get_catalog),
    ledger: BidLedger = Depends(_get_ledger),
    coordinator: BidCoordinator = Depends(_get_coordinator),
    reconciler: SettlementReconciler = Depends(_get_reconciler),
    alerts: AlertSink = Depends(_get_alerts),
) -> dict[str, Any]:
    auctions = await catalog.list(AuctionFilter.ALL)
    active = await catalog.list(AuctionFilter.ACTIVE_ONLY)
    outcomes = dict(coordinator.outcomes)
    submitted = sum(outcomes.values())
    accepted = outcomes.get("accepted", 0)
    return {
        "total_auctions": len(auctions),
        "active_auctions": len(active),
        "recorded_bids": await ledger.count(),
        "admission_outcomes": outcomes,
        "acceptance_rate": round(accepted / submitted, 4) if submitted else 0.0,
        "pending_settlements": len(reconciler.pending()),
        "alerts": len(alerts.recent()),
    }


@router.get("/reconciliation")
async def reconciliation(
    reconciler: SettlementReconciler = Depends(_get_reconciler),
    alerts: AlertSink = Depends(_get_alerts),
) -> dict[str, Any]:
    return {
        "pending": [settlement.to_dict() for settlement in reconciler.pending()],
        "alerts": [alert.to_dict() for alert in alerts.recent()],
    }
