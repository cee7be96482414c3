"""Outbound message delivery (email and WhatsApp)"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from flask import current_app

logger = logging.getLogger(__name__)

EXTENSION_KEY = "opsdesk.delivery_client"

CHANNEL_EMAIL = "email"
CHANNEL_WHATSAPP = "whatsapp"
CHANNELS = (CHANNEL_EMAIL, CHANNEL_WHATSAPP)


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    error: str | None = None
    simulated: bool = False


class HttpDeliveryClient:
    """
    Sends messages through provider HTTP APIs.

    Failures are returned as DeliveryResult(success=False); nothing is raised,
    so callers can treat delivery as best-effort.
    """

    def __init__(self, *, email_url: str | None = None, email_key: str | None = None,
                 email_from: str | None = None, whatsapp_url: str | None = None,
                 whatsapp_key: str | None = None, timeout: float = 10.0):
        self.email_url = email_url
        self.email_key = email_key
        self.email_from = email_from
        self.whatsapp_url = whatsapp_url
        self.whatsapp_key = whatsapp_key
        self.timeout = timeout

    def _endpoint(self, channel: str):
        if channel == CHANNEL_EMAIL:
            return self.email_url, self.email_key
        if channel == CHANNEL_WHATSAPP:
            return self.whatsapp_url, self.whatsapp_key
        return None, None

    def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult:
        if channel not in CHANNELS:
            return DeliveryResult(success=False, error=f"unsupported channel: {channel}")
        if not recipient:
            return DeliveryResult(success=False, error="recipient is required")

        url, key = self._endpoint(channel)
        if not url:
            logger.info("[%s] provider not configured, simulating send to %s", channel, recipient)
            return DeliveryResult(success=True, simulated=True)

        body = {"to": recipient, **payload}
        if channel == CHANNEL_EMAIL and self.email_from:
            body.setdefault("from", self.email_from)
        headers = {"Authorization": f"Bearer {key}"} if key else {}

        with httpx.Client(timeout=self.timeout) as client:
            try:
                response = client.post(url, json=body, headers=headers)
                response.raise_for_status()
            except httpx.TimeoutException:
                logger.warning("[%s] delivery to %s timed out after %ss", channel, recipient, self.timeout)
                return DeliveryResult(success=False, error="timeout")
            except httpx.HTTPStatusError as e:
                logger.warning("[%s] delivery to %s failed: HTTP %s", channel, recipient, e.response.status_code)
                return DeliveryResult(success=False, error=f"http {e.response.status_code}")
            except httpx.HTTPError as e:
                logger.warning("[%s] delivery to %s failed: %s", channel, recipient, e)
                return DeliveryResult(success=False, error=str(e))

        return DeliveryResult(success=True)


class LoggingDeliveryClient:
    """Logs messages instead of sending them (development default)."""

    def send(self, channel: str, recipient: str, payload: dict) -> DeliveryResult:
        if channel not in CHANNELS:
            return DeliveryResult(success=False, error=f"unsupported channel: {channel}")
        if not recipient:
            return DeliveryResult(success=False, error="recipient is required")
        logger.info("[%s] simulated message to %s: %s", channel, recipient, payload.get("subject") or payload.get("message"))
        return DeliveryResult(success=True, simulated=True)


def get_delivery_client():
    """Injected client from app.extensions, else HTTP when configured, else log-only."""
    injected = current_app.extensions.get(EXTENSION_KEY)
    if injected is not None:
        return injected

    cfg = current_app.config
    if cfg.get("EMAIL_API_URL") or cfg.get("WHATSAPP_API_URL"):
        return HttpDeliveryClient(
            email_url=cfg.get("EMAIL_API_URL"),
            email_key=cfg.get("EMAIL_API_KEY"),
            email_from=cfg.get("EMAIL_FROM"),
            whatsapp_url=cfg.get("WHATSAPP_API_URL"),
            whatsapp_key=cfg.get("WHATSAPP_API_KEY"),
            timeout=float(cfg.get("OUTBOUND_TIMEOUT_SECONDS", 10)),
        )
    return LoggingDeliveryClient()


def send_safely(channel: str, recipient: str | None, payload: dict) -> DeliveryResult:
    """Send through the resolved client; any failure is logged and returned, never raised."""
    if not recipient:
        return DeliveryResult(success=False, error=f"customer has no {channel} contact")
    try:
        return get_delivery_client().send(channel, recipient, payload)
    except Exception as e:
        logger.exception("Delivery via %s to %s raised", channel, recipient)
        return DeliveryResult(success=False, error=str(e))
