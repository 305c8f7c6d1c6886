"""Security alert delivery.

Dispatch is fire-and-forget: a slow or failing alert channel never blocks
or fails the login that produced the alert.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Protocol, Set

import httpx

from sessionguard.logging import get_logger
from sessionguard.storage.models import RiskLevel, SecurityAlert

logger = get_logger(__name__)

# Short timeout for webhook calls so pending alerts drain quickly
WEBHOOK_TIMEOUT = 5.0

_RISK_EMOJI = {RiskLevel.LOW: "ℹ️", RiskLevel.MEDIUM: "⚠️", RiskLevel.HIGH: "🚨"}


class AlertDispatcher(Protocol):
    async def dispatch(self, alert: SecurityAlert) -> None: ...


def alert_details(alert: SecurityAlert) -> Dict[str, Any]:
    return {
        "subject_id": alert.subject_id,
        "kind": alert.kind,
        "risk_level": alert.risk_level.value,
        "created_at": alert.created_at.isoformat(),
        **alert.context,
    }


class LoggingAlertDispatcher:
    """Writes alerts to the structured log only."""

    async def dispatch(self, alert: SecurityAlert) -> None:
        logger.warning(
            "security_alert",
            subject_id=alert.subject_id,
            alert_kind=alert.kind,
            risk_level=alert.risk_level.value,
            message=alert.message,
        )


class WebhookAlertDispatcher:
    """POSTs alerts to a Slack, Discord or generic JSON webhook."""

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = WEBHOOK_TIMEOUT,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self._client = client

    def build_payload(self, alert: SecurityAlert) -> Dict[str, Any]:
        emoji = _RISK_EMOJI.get(alert.risk_level, "❓")
        title = f"Security alert: {alert.kind}"
        details = json.dumps(alert_details(alert), indent=2, default=str)[:1500]
        if "discord.com/api/webhooks" in self.url:
            return {"content": f"{emoji} **{title}**\n{alert.message}\n```json\n{details}\n```"}
        if "hooks.slack.com" in self.url:
            return {"text": f"{emoji} *{title}*\n{alert.message}\n```{details}```"}
        return {
            "title": title,
            "message": alert.message,
            "severity": alert.risk_level.value,
            "timestamp": alert.created_at.isoformat(),
            "details": json.loads(json.dumps(alert_details(alert), default=str)),
            "source": "sessionguard",
        }

    async def dispatch(self, alert: SecurityAlert) -> None:
        payload = self.build_payload(alert)
        if self._client is not None:
            response = await self._client.post(self.url, json=payload, timeout=self.timeout)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload)
        response.raise_for_status()


class AlertNotifier:
    """Schedules alert dispatch in the background and tracks pending tasks."""

    def __init__(self, dispatcher: AlertDispatcher) -> None:
        self.dispatcher = dispatcher
        self._pending: Set[asyncio.Task] = set()
        self.sent = 0
        self.failed = 0

    def notify(self, alert: SecurityAlert) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "security_alert_dropped_no_loop",
                subject_id=alert.subject_id,
                alert_kind=alert.kind,
            )
            return
        task = loop.create_task(self._deliver(alert))
        # Keep a strong reference until the task finishes
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, alert: SecurityAlert) -> None:
        try:
            await self.dispatcher.dispatch(alert)
            self.sent += 1
        except Exception as exc:
            self.failed += 1
            logger.error(
                "security_alert_dispatch_failed",
                subject_id=alert.subject_id,
                alert_kind=alert.kind,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every alert scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
