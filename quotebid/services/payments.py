from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import aiohttp

from quotebid.core.config import settings
from quotebid.core.exceptions import PaymentError
from quotebid.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class ChargeResult:
    payment_id: str
    payment_intent_id: Optional[str]
    invoice_id: Optional[str]
    status: str


def to_cents(amount: Decimal) -> int:
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


def _flatten(params: Dict[str, Any], prefix: str = "") -> Dict[str, str]:
    """Stripe form encoding: ``{"metadata": {"a": 1}}`` -> ``{"metadata[a]": "1"}``."""
    flat: Dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class PaymentGateway:
    """Stripe REST client.

    Every failure raises ``PaymentError`` carrying the processor's message.
    """

    def __init__(
        self,
        *,
        secret_key: Optional[str] = None,
        api_base: Optional[str] = None,
        currency: Optional[str] = None,
        timeout: Optional[int] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.api_base = (api_base or settings.stripe_api_base).rstrip("/")
        self.currency = currency or settings.payment_currency
        self.timeout = timeout or settings.payment_timeout_seconds

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not self.secret_key:
            raise PaymentError("Payment processor not configured")

        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        url = f"{self.api_base}{path}"
        try:
            async with aiohttp.ClientSession() as session:
                async with session.request(
                    method,
                    url,
                    data=_flatten(params or {}) if method != "GET" else None,
                    params=_flatten(params or {}) if method == "GET" else None,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    body = await response.json(content_type=None)
                    if 200 <= response.status < 300:
                        return body or {}
                    error = (body or {}).get("error") or {}
                    message = error.get("message") or f"HTTP {response.status}"
                    logger.warning(
                        "payments.request_failed",
                        path=path,
                        status=response.status,
                        error_type=error.get("type"),
                        error_code=error.get("code"),
                    )
                    raise PaymentError(
                        message,
                        details={"status": response.status, "code": error.get("code")},
                    )
        except asyncio.TimeoutError as e:
            raise PaymentError("Payment processor timeout") from e
        except aiohttp.ClientError as e:
            raise PaymentError(f"Payment processor unreachable: {str(e)[:200]}") from e
        except ValueError as e:
            raise PaymentError(f"Invalid payment processor response: {str(e)[:200]}") from e

    async def create_customer(self, user) -> str:
        body = await self._request(
            "POST",
            "/customers",
            {
                "email": user.email,
                "name": user.full_name or user.username,
                "metadata": {"user_id": user.id},
            },
            idempotency_key=f"customer-user-{user.id}",
        )
        logger.info("payments.customer_created", user_id=user.id, customer_id=body.get("id"))
        return body["id"]

    async def charge(
        self,
        customer_id: str,
        amount: Decimal,
        *,
        payment_method_id: Optional[str],
        idempotency_key: str,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """Create and confirm an off-session PaymentIntent for ``amount``."""
        if not payment_method_id:
            raise PaymentError("No payment method on file")

        body = await self._request(
            "POST",
            "/payment_intents",
            {
                "amount": to_cents(amount),
                "currency": self.currency,
                "customer": customer_id,
                "payment_method": payment_method_id,
                "confirm": True,
                "off_session": True,
                "description": description,
                "metadata": metadata or {},
            },
            idempotency_key=idempotency_key,
        )
        return self._charge_result(body)

    async def retrieve_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payment_intents/{payment_intent_id}")

    async def capture_intent(
        self, payment_intent_id: str, *, idempotency_key: Optional[str] = None
    ) -> ChargeResult:
        body = await self._request(
            "POST",
            f"/payment_intents/{payment_intent_id}/capture",
            idempotency_key=idempotency_key,
        )
        return self._charge_result(body)

    @staticmethod
    def _charge_result(body: Dict[str, Any]) -> ChargeResult:
        status = body.get("status", "")
        if status != "succeeded":
            raise PaymentError(
                f"Payment not completed (status: {status or 'unknown'})",
                details={"payment_intent_id": body.get("id")},
            )
        return ChargeResult(
            payment_id=body.get("latest_charge") or body["id"],
            payment_intent_id=body.get("id"),
            invoice_id=body.get("invoice"),
            status=status,
        )
