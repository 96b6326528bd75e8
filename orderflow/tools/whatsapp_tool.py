"""WhatsApp Cloud API template sender.

Best-effort by contract: every failure (transport error, timeout, non-2xx)
is logged and reported as ``False``. Sends are never retried here and never
roll back the state change that triggered them.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from orderflow.config import Settings

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


class Templates:
    """Approved message template names."""
    ORDER_CONFIRMATION = "order_confirmation"
    ORDER_CONFIRMED_REPLY = "order_confirmed_reply"
    ORDER_CANCELLED_REPLY = "order_cancelled_reply_auto"
    ORDER_STATUS_UPDATE = "order_status_update"
    ORDER_SHIPPED = "your_order_is_shipped_2025"
    ORDER_DELIVERED = "order_delivered"
    CALL_US = "call_us_template"


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Protocol for customer notification senders."""

    async def send(
        self,
        phone: str,
        template: str,
        body_params: list[str] | None = None,
        quick_replies: list[str] | None = None,
        link_button: str | None = None,
    ) -> bool:
        """Send a template message. True when the provider accepted it."""
        ...


def build_template_components(
    body_params: list[str],
    quick_replies: list[str],
    link_button: str | None = None,
) -> list[dict[str, Any]]:
    """Build the ``template.components`` array for a template send."""
    components: list[dict[str, Any]] = []
    if body_params:
        components.append({
            "type": "body",
            "parameters": [{"type": "text", "text": str(p)} for p in body_params],
        })
    for index, payload in enumerate(quick_replies):
        components.append({
            "type": "button",
            "sub_type": "quick_reply",
            "index": str(index),
            "parameters": [{"type": "payload", "payload": payload}],
        })
    if link_button:
        components.append({
            "type": "button",
            "sub_type": "url",
            "index": str(len(quick_replies)),
            "parameters": [{"type": "text", "text": link_button}],
        })
    return components


class WhatsAppDispatcher:
    """Sends approved templates through the WhatsApp Cloud API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self._client = client
        self._token = settings.whatsapp_token
        self._language = settings.whatsapp_template_language
        self._timeout = settings.http_timeout_seconds
        self._endpoint = (
            f"{GRAPH_API_BASE}/{settings.whatsapp_api_version}"
            f"/{settings.whatsapp_number_id}/messages"
        )

    async def send(
        self,
        phone: str,
        template: str,
        body_params: list[str] | None = None,
        quick_replies: list[str] | None = None,
        link_button: str | None = None,
    ) -> bool:
        if not phone or not template:
            logger.error("WhatsApp send skipped: phone or template name missing")
            return False

        body = {
            "messaging_product": "whatsapp",
            "to": phone,
            "type": "template",
            "template": {
                "name": template,
                "language": {"code": self._language},
                "components": build_template_components(
                    body_params or [], quick_replies or [], link_button
                ),
            },
        }
        try:
            response = await self._client.post(
                self._endpoint,
                json=body,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "WhatsApp template %s to %s rejected (HTTP %d): %s",
                template,
                phone,
                e.response.status_code,
                e.response.text[:500],
            )
            return False
        except httpx.HTTPError as e:
            logger.error("WhatsApp template %s to %s failed: %s", template, phone, type(e).__name__)
            return False

        logger.info("WhatsApp template %s sent to %s", template, phone)
        return True
