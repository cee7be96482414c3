"""Payment provider HTTP client for creating PIX charges"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

import httpx
from flask import current_app

from ..errors import UpstreamServiceError

logger = logging.getLogger(__name__)

EXTENSION_KEY = "opsdesk.charge_client"


@dataclass(frozen=True)
class ChargeResult:
    charge_id: str
    qr_payload: str | None
    redirect_url: str | None
    status: str = "pending"


class HttpChargeClient:
    """Client for an external PIX charge provider"""

    def __init__(self, base_url: str, api_key: str | None = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout

    def create_charge(self, amount: Decimal, payer: dict, metadata: dict | None = None,
                      expires_in_hours: int = 24) -> ChargeResult:
        """
        Create a charge and return its provider id and QR payload.

        Raises:
            UpstreamServiceError: On timeout, HTTP errors, or invalid response
        """
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        body = {
            "amount": str(amount),
            "payer": {"name": payer.get("name"), "phone": payer.get("phone")},
            "metadata": metadata or {},
            "expires_in_seconds": int(expires_in_hours) * 3600,
        }

        with httpx.Client(timeout=self.timeout) as client:
            try:
                response = client.post(f"{self.base_url}/charges", json=body, headers=headers)
                response.raise_for_status()
                data = response.json()
                return ChargeResult(
                    charge_id=str(data["txid"]),
                    qr_payload=data.get("qr_code"),
                    redirect_url=data.get("redirect_url"),
                    status=data.get("status", "pending"),
                )
            except httpx.TimeoutException as e:
                raise UpstreamServiceError(f"Payment provider timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise UpstreamServiceError(f"Payment provider error: {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise UpstreamServiceError(f"Payment provider unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise UpstreamServiceError(f"Invalid charge data from payment provider: {e}") from e


class MockChargeClient:
    """
    Deterministic stand-in used when no provider is configured.

    Produces a BR-code style payload so the UI can still render a QR code.
    """

    def create_charge(self, amount: Decimal, payer: dict, metadata: dict | None = None,
                      expires_in_hours: int = 24) -> ChargeResult:
        txid = f"mock-{uuid.uuid4().hex}"
        name = (payer.get("name") or "")[:25]
        qr = (
            "00020126580014br.gov.bcb.pix0136"
            + txid
            + "5204000053039865802BR5913"
            + name
            + "6009SAO PAULO62070503***6304"
        )
        logger.info("Mock PIX charge %s created for %s", txid, amount)
        return ChargeResult(charge_id=txid, qr_payload=qr, redirect_url=None, status="pending")


def get_charge_client():
    """
    Resolve the charge client for the current app.

    An instance placed in app.extensions wins (tests inject fakes there);
    otherwise the HTTP client when PAYMENT_PROVIDER_URL is set, else the mock.
    """
    injected = current_app.extensions.get(EXTENSION_KEY)
    if injected is not None:
        return injected

    cfg = current_app.config
    if cfg.get("PAYMENT_PROVIDER_URL"):
        return HttpChargeClient(
            cfg["PAYMENT_PROVIDER_URL"],
            api_key=cfg.get("PAYMENT_PROVIDER_API_KEY"),
            timeout=float(cfg.get("OUTBOUND_TIMEOUT_SECONDS", 10)),
        )
    return MockChargeClient()
