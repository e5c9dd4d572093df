"""
Khalti e-payment adapter.

Two calls are used: ``epayment/initiate/`` to open a payment and get the
hosted payment page, and ``epayment/lookup/`` to read its current status.
Failures come back as ``Result`` values; nothing here retries.
"""
from dataclasses import dataclass, field
from typing import Optional
import logging

import httpx

from shared.errors import ErrorKind, Result
from shared.utils import Settings

logger = logging.getLogger("inventory-api.payments.gateway")


@dataclass(frozen=True)
class GatewayInitiation:
    pidx: str
    payment_url: Optional[str]
    raw: dict = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayLookup:
    status: str
    raw: dict = field(default_factory=dict)


def _error_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text or f"Khalti returned HTTP {response.status_code}"


class KhaltiGateway:
    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.transport = transport

    @property
    def return_url(self) -> str:
        return f"{self.settings.FRONTEND_URL.rstrip('/')}/payment-success"

    @property
    def website_url(self) -> str:
        return self.settings.FRONTEND_URL

    async def initiate(self, amount: int, order_id: str, order_name: str) -> Result[GatewayInitiation]:
        result = await self._post("epayment/initiate/", {
            "return_url": self.return_url,
            "website_url": self.website_url,
            "amount": amount,
            "purchase_order_id": order_id,
            "purchase_order_name": order_name,
        })
        if not result.ok:
            return result

        payload = result.value
        if not payload.get("pidx"):
            return Result.fail(ErrorKind.UPSTREAM, "Khalti did not return a payment reference")
        return Result.success(GatewayInitiation(
            pidx=payload["pidx"],
            payment_url=payload.get("payment_url"),
            raw=payload,
        ))

    async def lookup(self, pidx: str) -> Result[GatewayLookup]:
        result = await self._post("epayment/lookup/", {"pidx": pidx})
        if not result.ok:
            return result
        payload = result.value
        return Result.success(GatewayLookup(status=payload.get("status") or "Unknown", raw=payload))

    async def _post(self, path: str, body: dict) -> Result[dict]:
        secret_key = self.settings.KHALTI_SECRET_KEY
        if not secret_key:
            return Result.fail(
                ErrorKind.CONFIGURATION,
                "Khalti secret key missing. Set KHALTI_SECRET_KEY in the environment",
            )

        headers = {"Authorization": f"Key {secret_key}", "Content-Type": "application/json"}
        async with httpx.AsyncClient(
            base_url=self.settings.KHALTI_BASE_URL,
            timeout=self.settings.KHALTI_TIMEOUT,
            transport=self.transport,
        ) as client:
            try:
                response = await client.post(path, json=body, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                logger.warning("Khalti call rejected", extra={
                    "event": "gateway_error", "target": path, "status_code": exc.response.status_code,
                })
                return Result.fail(ErrorKind.UPSTREAM, _error_body(exc.response))
            except httpx.RequestError as exc:
                logger.error("Khalti unreachable", extra={"event": "gateway_error", "target": path})
                return Result.fail(ErrorKind.UPSTREAM, f"Khalti request failed: {exc}")

        try:
            payload = response.json()
        except ValueError:
            return Result.fail(ErrorKind.UPSTREAM, "Khalti returned a non-JSON response")
        return Result.success(payload if isinstance(payload, dict) else {})
