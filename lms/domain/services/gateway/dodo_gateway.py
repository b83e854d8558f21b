"""
Dodo Payments REST client.

Bearer-token auth, bounded timeout, no retries: reads fall back to the ledger
and payment creation is not idempotent on the gateway side.
"""
from __future__ import annotations

from typing import Any, Optional

import httpx

from lms.core.circuit_breaker import CircuitBreaker
from lms.core.exceptions import (
    GatewayPaymentNotFoundError,
    GatewayUnavailableError,
    ServiceTimeoutError,
)
from lms.core.logging import get_logger
from lms.domain.services.gateway.base import (
    CheckoutRequest,
    CheckoutSession,
    GatewayMetadata,
    GatewayPayment,
    PaymentGateway,
)

logger = get_logger(__name__)

# Dodo requires a billing address on payment links; the hosted page collects
# the real one from the customer.
_PLACEHOLDER_BILLING = {
    "city": "Global",
    "country": "US",
    "state": "NY",
    "street": "Digital",
    "zipcode": "00000",
}


class DodoPaymentsGateway(PaymentGateway):

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout_seconds: float,
        circuit_breaker: CircuitBreaker,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._circuit_breaker = circuit_breaker
        self._transport = transport

    @property
    def name(self) -> str:
        return "dodo_payments"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._api_key}"},
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, operation: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                response = await client.request(method, path, **kwargs)
        except httpx.TimeoutException:
            raise ServiceTimeoutError(self.name, self._timeout)
        except httpx.RequestError as exc:
            raise GatewayUnavailableError(
                message=f"{operation} network error: {exc}",
                details={"operation": operation, "network_error": True},
            )

        if response.status_code >= 400 and response.status_code != 404:
            raise GatewayUnavailableError.from_response(operation, response)
        return response

    async def fetch_payment_status(self, payment_id: str) -> GatewayPayment:
        async def _fetch() -> GatewayPayment:
            response = await self._request("GET", f"/payments/{payment_id}", "payments.retrieve")
            if response.status_code == 404:
                raise GatewayPaymentNotFoundError(payment_id)
            return self._parse_payment(payment_id, response.json())

        payment = await self._circuit_breaker.execute(_fetch)
        logger.info(
            "Gateway payment retrieved",
            extra_data={
                "payment_id": payment_id,
                "gateway_status": payment.raw_status,
                "total_amount": payment.total_amount,
            },
        )
        return payment

    async def create_payment(self, request: CheckoutRequest) -> CheckoutSession:
        body = {
            "billing": _PLACEHOLDER_BILLING,
            "customer": {"email": request.customer_email, "name": request.customer_name},
            "product_cart": [
                {"product_id": request.product_id, "quantity": 1, "amount": request.amount_minor},
            ],
            "billing_currency": request.currency,
            "payment_link": True,
            "return_url": request.return_url,
            "metadata": request.metadata,
        }

        async def _create() -> CheckoutSession:
            response = await self._request("POST", "/payments", "payments.create", json=body)
            if response.status_code == 404:
                raise GatewayUnavailableError.from_response("payments.create", response)
            data = response.json()
            payment_id = data.get("payment_id")
            payment_link = data.get("payment_link")
            if not payment_id or not payment_link:
                raise GatewayUnavailableError(
                    message="payments.create response missing payment_id or payment_link",
                    details={"operation": "payments.create"},
                )
            return CheckoutSession(payment_id=payment_id, payment_link=payment_link)

        session = await self._circuit_breaker.execute(_create)
        logger.info(
            "Gateway checkout created",
            extra_data={
                "payment_id": session.payment_id,
                "transaction_ref": request.metadata.get("transactionRef"),
                "amount_minor": request.amount_minor,
                "currency": request.currency,
            },
        )
        return session

    async def ping(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/products", params={"page_size": 1})
        except httpx.HTTPError as exc:
            logger.warning("Gateway ping failed", extra_data={"error": str(exc)})
            return False
        return response.status_code < 500

    @staticmethod
    def _parse_payment(payment_id: str, data: dict[str, Any]) -> GatewayPayment:
        total_amount = data.get("total_amount")
        return GatewayPayment(
            payment_id=data.get("payment_id") or payment_id,
            raw_status=data.get("status"),
            total_amount=int(total_amount) if isinstance(total_amount, (int, float)) else None,
            currency=data.get("currency"),
            metadata=GatewayMetadata.from_dict(data.get("metadata")),
        )
