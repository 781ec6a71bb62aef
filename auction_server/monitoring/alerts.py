"""
Operational alerts for money that the protocol could not settle on its own.

Alerts are always logged at ERROR and kept in a bounded in-memory history
served by the admin API. When ``alerts.webhook_url`` is configured they are
also POSTed there as JSON.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Deque

import httpx

from ..transport.timestamps import format_timestamp, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Alert:
    kind: str
    message: str
    raised_at: datetime
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "raised_at": format_timestamp(self.raised_at),
            "context": self.context,
        }


class AlertSink:
    def __init__(
        self,
        *,
        webhook_url: str = "",
        history_size: int = 100,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._webhook_url = webhook_url
        self._history: Deque[Alert] = deque(maxlen=history_size)
        self._client = client

    async def emit(self, kind: str, message: str, **context: Any) -> Alert:
        alert = Alert(kind=kind, message=message, raised_at=utcnow(), context=context)
        self._history.append(alert)
        logger.error("ALERT [%s] %s %s", kind, message, context)
        if self._webhook_url:
            await self._deliver(alert)
        return alert

    def recent(self) -> list[Alert]:
        return list(self._history)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _deliver(self, alert: Alert) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=10)
        try:
            response = await self._client.post(self._webhook_url, json=alert.to_dict())
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("alert webhook delivery failed: %s", exc)
