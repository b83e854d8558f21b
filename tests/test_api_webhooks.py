"""
Tests for POST /api/payments/webhook
"""
import json
import time
from decimal import Decimal
from unittest.mock import patch

import pytest
from httpx import AsyncClient

from lms.core.config import settings
from lms.db.models.payment_transaction import TransactionStatus
from lms.db.models.webhook_event import WebhookEvent
from lms.domain.services.webhook_service import PaymentWebhookService
from tests.conftest import (
    WEBHOOK_SECRET,
    count_payment_records,
    get_enrollment,
    get_transaction,
    sign_webhook as sign,
)

REF = "AI-1700000000000-AF-K7QM"
WEBHOOK_URL = "/api/payments/webhook"


def _succeeded(payment_id: str = "pay_1") -> dict:
    return {
        "type": "payment.succeeded",
        "data": {
            "payment_id": payment_id,
            "status": "succeeded",
            "total_amount": 1395,
            "currency": "USD",
            "metadata": {"transactionRef": REF, "userId": "u1", "courseSlug": "ai-101"},
        },
    }


@pytest.fixture
async def checkout(user_factory, course_factory, transaction_factory):
    await user_factory()
    await course_factory()
    return await transaction_factory(
        reference=REF,
        final_price=Decimal("5000.00"),
        status=TransactionStatus.PROCESSING,
        gateway_payment_id="pay_1",
    )


class TestPaymentWebhook:

    @pytest.mark.integration
    async def test_success_event_grants_access(self, test_client: AsyncClient, db_session, checkout):
        response = await test_client.post(WEBHOOK_URL, json=_succeeded(), headers={"webhook-id": "msg_1"})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert (await get_enrollment(db_session, "u1", "ai-101")).paid is True
        assert (await get_transaction(db_session, REF)).status == TransactionStatus.COMPLETED

        row = await db_session.get(WebhookEvent, "msg_1", populate_existing=True)
        assert row.status == "completed"
        assert row.event_type == "payment.succeeded"

    @pytest.mark.integration
    async def test_duplicate_delivery_short_circuits(self, test_client: AsyncClient, db_session, checkout):
        await test_client.post(WEBHOOK_URL, json=_succeeded(), headers={"webhook-id": "msg_1"})

        with patch.object(PaymentWebhookService, "handle_event") as handle_event:
            response = await test_client.post(WEBHOOK_URL, json=_succeeded(), headers={"webhook-id": "msg_1"})

        assert response.status_code == 200
        assert response.json() == {"received": True, "duplicate": True}
        handle_event.assert_not_called()
        assert await count_payment_records(db_session) == 1

    @pytest.mark.integration
    async def test_event_key_fallback(self, test_client: AsyncClient, db_session, checkout):
        payload = _succeeded()
        payload["event"] = payload.pop("type")

        response = await test_client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        assert (await get_enrollment(db_session, "u1", "ai-101")).paid is True

    @pytest.mark.integration
    async def test_processing_error_is_acknowledged_and_retried(
        self, test_client: AsyncClient, db_session, checkout
    ):
        async def _boom(self, event_type, payload):
            raise RuntimeError("database went away")

        with patch.object(PaymentWebhookService, "handle_event", _boom):
            response = await test_client.post(WEBHOOK_URL, json=_succeeded(), headers={"webhook-id": "msg_2"})

        assert response.status_code == 200
        assert response.json() == {"received": True}
        row = await db_session.get(WebhookEvent, "msg_2", populate_existing=True)
        assert row.status == "failed"
        assert row.error == "database went away"

        # the gateway's redelivery is processed
        response = await test_client.post(WEBHOOK_URL, json=_succeeded(), headers={"webhook-id": "msg_2"})

        assert response.json() == {"received": True}
        assert (await get_enrollment(db_session, "u1", "ai-101")).paid is True

    @pytest.mark.integration
    async def test_malformed_json(self, test_client: AsyncClient):
        response = await test_client.post(
            WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "ERR_1000"

    @pytest.mark.integration
    async def test_non_object_body(self, test_client: AsyncClient):
        response = await test_client.post(WEBHOOK_URL, json=["payment.succeeded"])

        assert response.status_code == 500

    @pytest.mark.integration
    async def test_unhandled_event_acknowledged(self, test_client: AsyncClient):
        response = await test_client.post(WEBHOOK_URL, json={"type": "dispute.opened", "data": {}})

        assert response.status_code == 200
        assert response.json() == {"received": True}


class TestWebhookSignature:

    @pytest.mark.integration
    async def test_valid_signature_accepted(self, test_client: AsyncClient, db_session, checkout):
        body = json.dumps(_succeeded()).encode()
        headers = sign(body, webhook_id="msg_signed", timestamp=int(time.time()))
        headers["Content-Type"] = "application/json"

        with patch.object(settings, "DODO_WEBHOOK_SECRET", WEBHOOK_SECRET):
            response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 200
        assert (await get_enrollment(db_session, "u1", "ai-101")).paid is True

    @pytest.mark.integration
    async def test_bad_signature_rejected(self, test_client: AsyncClient, db_session, checkout):
        body = json.dumps(_succeeded()).encode()
        headers = sign(b"something else", webhook_id="msg_forged", timestamp=int(time.time()))
        headers["Content-Type"] = "application/json"

        with patch.object(settings, "DODO_WEBHOOK_SECRET", WEBHOOK_SECRET):
            response = await test_client.post(WEBHOOK_URL, content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_2005"
        assert await get_enrollment(db_session, "u1", "ai-101") is None

    @pytest.mark.integration
    async def test_unsigned_request_rejected_when_secret_set(self, test_client: AsyncClient):
        with patch.object(settings, "DODO_WEBHOOK_SECRET", WEBHOOK_SECRET):
            response = await test_client.post(WEBHOOK_URL, json=_succeeded())

        assert response.status_code == 401
