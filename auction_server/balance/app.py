"""Standalone balance authority service (``uvicorn auction_server.balance.app:app --port 8080``)."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from . import api
from .local import BalanceAuthority


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.balance_authority = BalanceAuthority()
    yield


app = FastAPI(
    title="Balance Authority",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(api.router)


@app.get("/ping", tags=["meta"])
async def ping() -> dict[str, str]:
    return {"status": "ok", "version": app.version}
