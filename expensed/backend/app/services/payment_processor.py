# backend/app/services/payment_processor.py
import hashlib
import hmac
import uuid
from typing import Any, Dict, Optional

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from app.core.config import settings
from app.core.exceptions import ExternalServiceError
from app.core.logging import logger


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExternalServiceError) and exc.retryable


def new_idempotency_key(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class PaymentProcessorService:
    """
    HTTP client for the payment processor.

    Reads are retried with exponential backoff on transport errors and 5xx
    responses. Mutating calls send an ``Idempotency-Key`` header and are
    issued exactly once; the caller decides what to do with a failure.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.PROCESSOR_API_KEY
        self.base_url = (base_url or settings.PROCESSOR_BASE_URL).rstrip("/")
        self.webhook_secret = webhook_secret if webhook_secret is not None else settings.PROCESSOR_WEBHOOK_SECRET
        self.timeout = timeout or settings.PROCESSOR_TIMEOUT_SECONDS
        self._transport = transport

    # ==================== Transport ====================

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.request(method, path, json=payload, params=params, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Payment processor timeout: {method} {path}: {e}")
            raise ExternalServiceError(f"Payment processor timed out on {method} {path}", retryable=True) from e
        except httpx.TransportError as e:
            logger.error(f"Payment processor unreachable: {method} {path}: {e}")
            raise ExternalServiceError(f"Payment processor unreachable on {method} {path}", retryable=True) from e

        try:
            body = response.json() if response.content else {}
        except ValueError:
            body = {"raw": response.text}

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            error = body.get("error") if isinstance(body, dict) else None
            message = error.get("message") if isinstance(error, dict) else error
            logger.error(
                f"Payment processor error {response.status_code} on {method} {path}: {message or body}"
            )
            raise ExternalServiceError(
                message or f"Payment processor returned {response.status_code}",
                retryable=retryable,
                details={"status_code": response.status_code, "path": path},
            )
        return body

    @retry(
        stop=stop_after_attempt(settings.PROCESSOR_MAX_RETRIES),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception(_is_retryable),
        reraise=True,
    )
    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._request("GET", path, params=params)

    async def _post(self, path: str, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", path, payload=payload, idempotency_key=idempotency_key)

    async def _delete(self, path: str, idempotency_key: str) -> Dict[str, Any]:
        return await self._request("DELETE", path, idempotency_key=idempotency_key)

    # ==================== Customers & checkout ====================

    async def create_customer(self, organization_id: str, email: Optional[str], name: str) -> str:
        result = await self._post(
            "/customers",
            {"email": email, "name": name, "metadata": {"organization_id": organization_id}},
            idempotency_key=f"customer_{organization_id}",
        )
        logger.info(f"Created processor customer for organization {organization_id}")
        return result["id"]

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        organization_id: str,
        plan_id: str,
        billing_cycle: str,
    ) -> Dict[str, str]:
        """
        Create a hosted checkout session for a subscription

        Returns:
            Dict with url and session_id
        """
        result = await self._post(
            "/checkout/sessions",
            {
                "customer": customer_id,
                "mode": "subscription",
                "line_items": [{"price": price_id, "quantity": 1}],
                "success_url": f"{settings.FRONTEND_URL}/organization/billing?session_id={{CHECKOUT_SESSION_ID}}&success=true",
                "cancel_url": f"{settings.FRONTEND_URL}/organization/billing?canceled=true",
                "allow_promotion_codes": True,
                "metadata": {
                    "organization_id": organization_id,
                    "plan_id": plan_id,
                    "billing_cycle": billing_cycle,
                },
                "subscription_data": {"metadata": {"organization_id": organization_id, "plan_id": plan_id}},
            },
            idempotency_key=new_idempotency_key("checkout"),
        )
        return {"url": result["url"], "session_id": result["id"]}

    async def create_customer_portal(self, customer_id: str) -> str:
        result = await self._post(
            "/billing_portal/sessions",
            {"customer": customer_id, "return_url": f"{settings.FRONTEND_URL}/organization/billing"},
            idempotency_key=new_idempotency_key("portal"),
        )
        return result["url"]

    # ==================== Subscriptions ====================

    async def get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._get(f"/subscriptions/{subscription_id}")

    async def change_subscription_price(self, subscription_id: str, price_id: str, plan_id: str) -> Dict[str, Any]:
        current = await self.get_subscription(subscription_id)
        items = (current.get("items") or {}).get("data") or []
        if not items:
            raise ExternalServiceError("Processor subscription has no items", retryable=False)
        return await self._post(
            f"/subscriptions/{subscription_id}",
            {
                "items": [{"id": items[0]["id"], "price": price_id}],
                "proration_behavior": "create_prorations",
                "metadata": {"plan_id": plan_id},
            },
            idempotency_key=new_idempotency_key("price_change"),
        )

    async def set_cancel_at_period_end(self, subscription_id: str, cancel: bool) -> Dict[str, Any]:
        return await self._post(
            f"/subscriptions/{subscription_id}",
            {"cancel_at_period_end": cancel},
            idempotency_key=new_idempotency_key("cancel" if cancel else "resume"),
        )

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return await self._delete(f"/subscriptions/{subscription_id}", idempotency_key=new_idempotency_key("cancel_now"))

    async def set_paused(self, subscription_id: str, paused: bool) -> Dict[str, Any]:
        return await self._post(
            f"/subscriptions/{subscription_id}",
            {"pause_collection": {"behavior": "void"} if paused else None},
            idempotency_key=new_idempotency_key("pause" if paused else "unpause"),
        )

    async def set_trial_end(self, subscription_id: str, trial_end_ts: int) -> Dict[str, Any]:
        return await self._post(
            f"/subscriptions/{subscription_id}",
            {"trial_end": trial_end_ts, "proration_behavior": "none"},
            idempotency_key=new_idempotency_key("trial"),
        )

    async def apply_coupon(self, subscription_id: str, processor_coupon_id: str) -> Dict[str, Any]:
        return await self._post(
            f"/subscriptions/{subscription_id}",
            {"coupon": processor_coupon_id},
            idempotency_key=new_idempotency_key("coupon"),
        )

    # ==================== Coupons ====================

    async def create_coupon(
        self,
        code: str,
        discount_type: str,
        discount_value: int,
        duration: str,
        duration_months: Optional[int] = None,
        max_redemptions: Optional[int] = None,
        redeem_by_ts: Optional[int] = None,
    ) -> str:
        payload: Dict[str, Any] = {"id": code, "name": code, "duration": duration}
        if discount_type == "percent":
            payload["percent_off"] = discount_value
        else:
            payload["amount_off"] = discount_value
            payload["currency"] = "usd"
        if duration == "repeating" and duration_months:
            payload["duration_in_months"] = duration_months
        if max_redemptions:
            payload["max_redemptions"] = max_redemptions
        if redeem_by_ts:
            payload["redeem_by"] = redeem_by_ts

        result = await self._post("/coupons", payload, idempotency_key=f"coupon_{code}")
        return result["id"]

    async def delete_coupon(self, processor_coupon_id: str) -> None:
        await self._delete(f"/coupons/{processor_coupon_id}", idempotency_key=new_idempotency_key("coupon_delete"))

    # ==================== Refunds ====================

    async def refund(self, charge_id: str, amount_cents: Optional[int], idempotency_key: str) -> Dict[str, Any]:
        """
        Refund a charge, fully when ``amount_cents`` is None.

        Never retried here: a timeout leaves the outcome unknown, and the
        idempotency key lets an operator re-issue the same refund safely.
        """
        payload: Dict[str, Any] = {"charge": charge_id}
        if amount_cents is not None:
            payload["amount"] = amount_cents
        return await self._post("/refunds", payload, idempotency_key=idempotency_key)

    # ==================== Webhooks ====================

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """
        Verify the HMAC SHA-256 signature sent with a processor webhook

        Args:
            payload: Raw request body
            signature: X-Signature header value (hex digest)

        Returns:
            True if signature is valid
        """
        if not self.webhook_secret:
            logger.warning("Webhook secret not configured")
            return settings.ENVIRONMENT == "development"

        expected_signature = hmac.new(
            self.webhook_secret.encode(),
            payload,
            hashlib.sha256,
        ).hexdigest()

        return hmac.compare_digest(signature or "", expected_signature)
