"""Outbound department webhooks (Microsoft Teams or Power Automate)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from andon_board.config import NotifySettings
from andon_board.utils.time import ms_to_iso

logger = logging.getLogger(__name__)

ADAPTIVE_CARD_SCHEMA = "http://adaptivecards.io/schemas/adaptive-card.json"
ADAPTIVE_CARD_CONTENT_TYPE = "application/vnd.microsoft.card.adaptive"


@dataclass(frozen=True)
class DeliveryResult:
    ok: bool
    status: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"ok": self.ok, "status": self.status, "error": self.error}


def _status_color(status: str) -> str:
    if status in ("cancel", "cancelled"):
        return "attention"
    if status in ("complete", "completed"):
        return "good"
    return "warning"


def _format_ts(value: Any) -> str:
    try:
        return ms_to_iso(int(value))
    except (TypeError, ValueError, OverflowError, OSError):
        return str(value)


def build_adaptive_card(event: Mapping[str, Any]) -> dict[str, Any]:
    status = str(event.get("status") or event.get("event") or "open").lower()
    title = event.get("title") or event.get("event") or "Event"
    work_order = event.get("externalWorkOrder")
    if not isinstance(work_order, Mapping):
        work_order = {}

    facts: list[dict[str, str]] = []
    for label, key in (
        ("Cell", "cellName"),
        ("Cell ID", "cellId"),
        ("Ticket", "ticketId"),
        ("Call", "callId"),
        ("Note", "note"),
    ):
        if event.get(key):
            facts.append({"title": label, "value": str(event[key])})
    if work_order.get("displayNumber"):
        facts.append({"title": "WO", "value": str(work_order["displayNumber"])})
    if event.get("ts"):
        facts.append({"title": "Time", "value": _format_ts(event["ts"])})

    card: dict[str, Any] = {
        "$schema": ADAPTIVE_CARD_SCHEMA,
        "type": "AdaptiveCard",
        "version": "1.4",
        "body": [
            {
                "type": "TextBlock",
                "text": f"{str(event.get('dept') or '').upper()} - {title}",
                "weight": "Bolder",
                "size": "Medium",
            },
            {
                "type": "ColumnSet",
                "columns": [
                    {
                        "type": "Column",
                        "width": "stretch",
                        "items": [{"type": "FactSet", "facts": facts}],
                    },
                    {
                        "type": "Column",
                        "width": "auto",
                        "items": [
                            {
                                "type": "TextBlock",
                                "text": str(event.get("status") or "OPEN").upper(),
                                "weight": "Bolder",
                                "color": _status_color(status),
                            }
                        ],
                    },
                ],
            },
        ],
    }
    if work_order.get("externalUrl"):
        href = str(work_order["externalUrl"])
        if work_order.get("displayNumber"):
            href = f"{href}/{work_order['displayNumber']}"
        card["actions"] = [{"type": "Action.OpenUrl", "title": "Open Fiix", "url": href}]
    return card


def is_power_automate(url: str) -> bool:
    return "powerautomate" in url.lower()


def build_payload(url: str, event: Mapping[str, Any], *, force_power_automate: bool) -> dict:
    if force_power_automate or is_power_automate(url):
        text = event.get("note") or event.get("event")
        if not text:
            dept = event.get("dept")
            text = f"{str(dept).upper()} notification" if dept else "Andon notification"
        return {"text": str(text)}
    return {
        "type": "message",
        "attachments": [
            {"contentType": ADAPTIVE_CARD_CONTENT_TYPE, "content": build_adaptive_card(event)}
        ],
    }


class WebhookNotifier:
    def __init__(
        self,
        settings: NotifySettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._client = httpx.AsyncClient(timeout=settings.timeout_seconds, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, url: str | None, event: Mapping[str, Any]) -> DeliveryResult:
        """POST ``event`` to ``url``. Failures are logged and reported, never raised."""
        dept = event.get("dept")
        if not url:
            return DeliveryResult(ok=False, error="no_webhook_configured")
        try:
            payload = build_payload(
                url, event, force_power_automate=self._settings.force_power_automate
            )
        except Exception as exc:
            logger.error("Webhook payload for %s could not be built: %s", dept, exc)
            return DeliveryResult(ok=False, error=f"invalid event: {exc}")
        try:
            response = await self._client.post(url, json=payload)
        except httpx.HTTPError as exc:
            logger.error("Webhook POST to %s error: %s", dept, exc)
            return DeliveryResult(ok=False, error=str(exc) or type(exc).__name__)
        if response.is_error:
            logger.error("Webhook POST to %s failed: %s", dept, response.status_code)
            return DeliveryResult(ok=False, status=response.status_code)
        return DeliveryResult(ok=True, status=response.status_code)
