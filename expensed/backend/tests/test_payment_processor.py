"""
Payment processor client tests
Retry policy, error mapping, request shapes and webhook signatures
"""

import hashlib
import hmac
import json
import httpx
import pytest
from tenacity import wait_none

from app.core.config import settings
from app.core.exceptions import ExternalServiceError
from app.services.payment_processor import PaymentProcessorService


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    """Keep the retry policy but skip the exponential sleep"""
    monkeypatch.setattr(PaymentProcessorService._get.retry, "wait", wait_none())


def scripted(responses):
    """Transport that replays ``responses`` in order and records each request"""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        response = responses[min(len(seen), len(responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response

    return httpx.MockTransport(handler), seen


def make_processor(transport, webhook_secret="whsec_test") -> PaymentProcessorService:
    return PaymentProcessorService(
        api_key="sk_test",
        base_url="https://processor.test/v1/",
        webhook_secret=webhook_secret,
        transport=transport,
    )


@pytest.mark.asyncio
class TestRetryPolicy:
    """Test which calls are retried"""

    async def test_read_retried_after_server_error(self):
        transport, seen = scripted([
            httpx.Response(503, json={"error": {"message": "Service unavailable"}}),
            httpx.Response(200, json={"id": "sub_1", "status": "active"}),
        ])

        result = await make_processor(transport).get_subscription("sub_1")

        assert result["status"] == "active"
        assert len(seen) == 2

    async def test_read_gives_up_after_max_attempts(self):
        transport, seen = scripted([httpx.Response(500, json={"error": "boom"})])

        with pytest.raises(ExternalServiceError) as exc_info:
            await make_processor(transport).get_subscription("sub_1")

        assert len(seen) == settings.PROCESSOR_MAX_RETRIES
        assert exc_info.value.retryable is True
        assert exc_info.value.details == {"status_code": 500, "path": "/subscriptions/sub_1"}

    async def test_timeout_is_retryable(self):
        request = httpx.Request("GET", "https://processor.test/v1/subscriptions/sub_1")
        transport, seen = scripted([
            httpx.ReadTimeout("timed out", request=request),
            httpx.Response(200, json={"id": "sub_1"}),
        ])

        result = await make_processor(transport).get_subscription("sub_1")

        assert result == {"id": "sub_1"}
        assert len(seen) == 2

    async def test_client_error_not_retried(self):
        transport, seen = scripted([httpx.Response(404, json={"error": {"message": "No such subscription"}})])

        with pytest.raises(ExternalServiceError, match="No such subscription") as exc_info:
            await make_processor(transport).get_subscription("sub_missing")

        assert len(seen) == 1
        assert exc_info.value.retryable is False

    async def test_mutation_sent_once(self):
        """
        Test: POST hits a 503
        Expected: Raised after a single attempt, flagged retryable for the caller
        """
        transport, seen = scripted([httpx.Response(503, json={})])

        with pytest.raises(ExternalServiceError) as exc_info:
            await make_processor(transport).set_cancel_at_period_end("sub_1", True)

        assert len(seen) == 1
        assert exc_info.value.retryable is True

    async def test_unreachable(self):
        request = httpx.Request("POST", "https://processor.test/v1/refunds")
        transport, _ = scripted([httpx.ConnectError("connection refused", request=request)])

        with pytest.raises(ExternalServiceError, match="unreachable") as exc_info:
            await make_processor(transport).refund("ch_1", None, idempotency_key="refund_1")

        assert exc_info.value.retryable is True

    async def test_rate_limit_is_retryable(self):
        transport, _ = scripted([httpx.Response(429, json={"error": {"message": "Too many requests"}})])

        with pytest.raises(ExternalServiceError) as exc_info:
            await make_processor(transport).create_customer_portal("cus_1")

        assert exc_info.value.retryable is True


@pytest.mark.asyncio
class TestRequests:
    """Test request shapes and headers"""

    async def test_auth_and_idempotency_headers(self):
        transport, seen = scripted([httpx.Response(200, json={"id": "cus_1"})])

        customer_id = await make_processor(transport).create_customer("org-1", "billing@acme.test", "Acme Corp")

        assert customer_id == "cus_1"
        request = seen[0]
        assert request.url.path == "/v1/customers"
        assert request.headers["Authorization"] == "Bearer sk_test"
        assert request.headers["Idempotency-Key"] == "customer_org-1"

    async def test_reads_carry_no_idempotency_key(self):
        transport, seen = scripted([httpx.Response(200, json={"id": "sub_1"})])

        await make_processor(transport).get_subscription("sub_1")

        assert "Idempotency-Key" not in seen[0].headers

    async def test_price_change_uses_current_item(self):
        transport, seen = scripted([
            httpx.Response(200, json={"id": "sub_1", "items": {"data": [{"id": "si_9"}]}}),
            httpx.Response(200, json={"id": "sub_1"}),
        ])

        await make_processor(transport).change_subscription_price("sub_1", "price_team_monthly", "plan-team")

        assert seen[1].method == "POST"
        assert json.loads(seen[1].content) == {
            "items": [{"id": "si_9", "price": "price_team_monthly"}],
            "proration_behavior": "create_prorations",
            "metadata": {"plan_id": "plan-team"},
        }

    async def test_price_change_without_items(self):
        transport, _ = scripted([httpx.Response(200, json={"id": "sub_1", "items": {"data": []}})])

        with pytest.raises(ExternalServiceError, match="no items"):
            await make_processor(transport).change_subscription_price("sub_1", "price_x", "plan-x")

    async def test_fixed_amount_coupon_payload(self):
        transport, seen = scripted([httpx.Response(200, json={"id": "SAVE5"})])

        await make_processor(transport).create_coupon("SAVE5", "fixed", 500, "repeating", duration_months=3)

        assert json.loads(seen[0].content) == {
            "id": "SAVE5",
            "name": "SAVE5",
            "duration": "repeating",
            "amount_off": 500,
            "currency": "usd",
            "duration_in_months": 3,
        }


class TestWebhookSignature:
    """Test HMAC verification of webhook payloads"""

    PAYLOAD = b'{"id": "evt_1", "type": "invoice.paid"}'

    def sign(self, payload: bytes, secret: str = "whsec_test") -> str:
        return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

    def test_valid_signature(self):
        assert make_processor(None).verify_webhook_signature(self.PAYLOAD, self.sign(self.PAYLOAD)) is True

    def test_tampered_payload(self):
        signature = self.sign(self.PAYLOAD)

        assert make_processor(None).verify_webhook_signature(self.PAYLOAD + b" ", signature) is False

    def test_wrong_secret(self):
        assert make_processor(None).verify_webhook_signature(self.PAYLOAD, self.sign(self.PAYLOAD, "other")) is False

    def test_missing_signature(self):
        assert make_processor(None).verify_webhook_signature(self.PAYLOAD, None) is False

    @pytest.mark.parametrize("environment,accepted", [("development", True), ("production", False)])
    def test_unconfigured_secret(self, monkeypatch, environment, accepted):
        monkeypatch.setattr(settings, "ENVIRONMENT", environment)

        assert make_processor(None, webhook_secret="").verify_webhook_signature(self.PAYLOAD, "") is accepted


class TestExternalServiceError:
    """Test the client-facing error body"""

    def test_message_hidden(self):
        error = ExternalServiceError("card_declined: insufficient funds on acct_123", retryable=False)

        assert error.status_code == 502
        assert error.to_dict() == {
            "error": "ExternalServiceError",
            "message": "Payment service unavailable, please try again later",
            "retryable": False,
        }
        assert "insufficient funds" in str(error)
