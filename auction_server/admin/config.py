"""Expose currently loaded server config for debugging."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..config import ServerConfig

router = APIRouter(prefix="/admin", tags=["admin"])


def _get_config(request: Request) -> ServerConfig:
    return request.app.state.server_config


@router.get("/config")
async def config(
    request: Request,
    config: ServerConfig = Depends(_get_config),
) -> dict:
    balance = config.balance_authority
    return {
        "version": request.app.version,
        "storage_backend": config.storage.backend,
        "balance_authority": {
            "backend": balance.backend,
            "base_url": balance.base_url if balance.backend == "http" else None,
            "protocol": balance.protocol,
            "timeout_ms": balance.timeout_ms,
        },
        "reconciliation": {
            "max_attempts": config.reconciliation.max_attempts,
            "backoff_ms": config.reconciliation.backoff_ms,
        },
        "alert_webhook_configured": bool(config.alerts.webhook_url),
    }
