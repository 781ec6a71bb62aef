"""Configuration helpers for the auction server."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml

_DEFAULT_SERVER_CONFIG = Path(__file__).resolve().parent / "server.yaml"


@dataclass(frozen=True)
class StorageConfig:
    backend: str
    options: Mapping[str, Any]


@dataclass(frozen=True)
class BalanceAuthorityConfig:
    backend: str
    base_url: str
    protocol: str
    timeout_ms: int

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


@dataclass(frozen=True)
class ReconciliationConfig:
    max_attempts: int
    backoff_ms: int


@dataclass(frozen=True)
class AlertConfig:
    webhook_url: str
    history_size: int


@dataclass(frozen=True)
class ServerConfig:
    listen: Mapping[str, Any]
    storage: StorageConfig
    balance_authority: BalanceAuthorityConfig
    reconciliation: ReconciliationConfig
    alerts: AlertConfig


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(path)
    return yaml.safe_load(path.read_text()) or {}


def parse_server_config(data: Mapping[str, Any]) -> ServerConfig:
    storage = data.get("storage", {})
    balance = data.get("balance_authority", {})
    reconciliation = data.get("reconciliation", {})
    alerts = data.get("alerts", {})
    protocol = str(balance.get("protocol", "reserve"))
    if protocol not in {"reserve", "legacy"}:
        raise ValueError(f"unknown balance authority protocol {protocol}")
    return ServerConfig(
        listen=data.get("listen", {}),
        storage=StorageConfig(
            backend=str(storage.get("backend", "in_memory")),
            options=dict(storage.get("options") or {}),
        ),
        balance_authority=BalanceAuthorityConfig(
            backend=str(balance.get("backend", "local")),
            base_url=str(balance.get("base_url", "http://localhost:8080")),
            protocol=protocol,
            timeout_ms=int(balance.get("timeout_ms", 2000)),
        ),
        reconciliation=ReconciliationConfig(
            max_attempts=int(reconciliation.get("max_attempts", 5)),
            backoff_ms=int(reconciliation.get("backoff_ms", 200)),
        ),
        alerts=AlertConfig(
            webhook_url=str(alerts.get("webhook_url") or ""),
            history_size=int(alerts.get("history_size", 100)),
        ),
    )


@lru_cache(maxsize=1)
def get_server_config() -> ServerConfig:
    path = Path(os.getenv("AUCTION_CONFIG_PATH", _DEFAULT_SERVER_CONFIG))
    return parse_server_config(_load_yaml(path))
