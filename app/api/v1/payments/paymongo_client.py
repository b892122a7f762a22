"""
PayMongo payment gateway integration
"""

from typing import Dict, Any, Optional, List
import hashlib
import hmac
import logging

import httpx

from app.core.config import settings
from app.core.exceptions import ExternalServiceError
from app.utils.metadata import flatten_metadata

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_METHODS = ["qrph", "gcash", "paymaya", "card", "grab_pay"]

REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer", "others"}

class PayMongoClient:
    """PayMongo REST API client wrapper"""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        live_mode: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.PAYMONGO_SECRET_KEY
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.PAYMONGO_WEBHOOK_SECRET
        )
        self.live_mode = live_mode if live_mode is not None else settings.PAYMONGO_LIVE_MODE
        self.client = httpx.AsyncClient(
            base_url=base_url or settings.PAYMONGO_API_BASE,
            auth=(self.secret_key, ""),
            timeout=timeout or settings.PAYMONGO_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        attributes: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        payload = {"data": {"attributes": attributes}} if attributes is not None else None

        try:
            response = await self.client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"PayMongo {method} {path} timed out: {e}")
            raise ExternalServiceError("Payment gateway timed out")
        except httpx.HTTPError as e:
            logger.error(f"PayMongo {method} {path} failed: {e}")
            raise ExternalServiceError("Payment gateway is unreachable")

        if response.status_code >= 400:
            detail = _error_detail(response)
            logger.error(f"PayMongo {method} {path} returned {response.status_code}: {detail}")
            raise ExternalServiceError(f"Payment gateway error: {detail}")

        try:
            return response.json()
        except ValueError:
            raise ExternalServiceError("Payment gateway returned an invalid response")

    async def create_payment_intent(
        self,
        amount: int,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        allowed_methods: Optional[List[str]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create PayMongo payment intent

        Args:
            amount: Amount in centavos
            description: Statement description
            metadata: Free-form metadata, flattened before sending
            allowed_methods: Payment method types the intent accepts
            idempotency_key: Gateway-side idempotency key

        Returns:
            Payment intent resource
        """
        attributes = {
            "amount": int(amount),
            "currency": settings.CURRENCY,
            "description": description,
            "payment_method_allowed": allowed_methods or DEFAULT_ALLOWED_METHODS,
            "capture_type": "automatic",
            "metadata": flatten_metadata(metadata),
        }
        return await self._request("POST", "/payment_intents", attributes, idempotency_key)

    async def create_payment_method(
        self,
        method_type: str,
        details: Optional[Dict[str, Any]] = None,
        billing: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Create a payment method resource, e.g. qrph"""
        attributes: Dict[str, Any] = {"type": method_type}
        if details:
            attributes["details"] = details
        if billing:
            attributes["billing"] = billing
        return await self._request("POST", "/payment_methods", attributes)

    async def attach_payment_method(
        self,
        payment_intent_id: str,
        payment_method_id: str,
        return_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Attach payment method to intent

        Returns:
            Updated intent, possibly carrying a next_action (redirect or QR code)
        """
        attributes = {
            "payment_method": payment_method_id,
            "return_url": return_url or settings.PAYMENT_RETURN_URL,
        }
        return await self._request(
            "POST", f"/payment_intents/{payment_intent_id}/attach", attributes
        )

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payment_intents/{payment_intent_id}")

    async def create_refund(
        self,
        payment_id: str,
        amount: int,
        reason: str = "requested_by_customer",
        metadata: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create refund for a captured gateway payment

        Args:
            payment_id: Gateway payment (charge) ID
            amount: Amount to refund in centavos
            reason: Gateway reason code; free text goes into notes
            metadata: Additional metadata
            notes: Free-form note

        Returns:
            Refund resource
        """
        if reason not in REFUND_REASONS:
            notes = notes or reason
            reason = "others"
        attributes: Dict[str, Any] = {
            "amount": int(amount),
            "payment_id": payment_id,
            "reason": reason,
            "metadata": flatten_metadata(metadata),
        }
        if notes:
            attributes["notes"] = notes[:255]
        return await self._request("POST", "/refunds", attributes)

    def verify_webhook_signature(self, raw_body: bytes, signature_header: Optional[str]) -> bool:
        """
        Verify Paymongo-Signature header

        Header format is ``t=<timestamp>,te=<test sig>,li=<live sig>``; the
        signature is HMAC-SHA256 of ``"<timestamp>.<raw body>"``.

        Args:
            raw_body: Raw request body bytes
            signature_header: Header value

        Returns:
            True if signature is valid
        """
        if not signature_header or not self.webhook_secret:
            return False

        parts = {}
        for chunk in signature_header.split(","):
            name, _, value = chunk.strip().partition("=")
            if name:
                parts[name] = value

        timestamp = parts.get("t")
        provided = parts.get("li") if self.live_mode else parts.get("te")
        if not timestamp or not provided:
            return False

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        signed = timestamp.encode("utf-8") + b"." + raw_body
        expected = hmac.new(self.webhook_secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, provided)

def _error_detail(response: httpx.Response) -> str:
    try:
        errors = response.json().get("errors") or []
        if errors:
            return "; ".join(str(e.get("detail") or e.get("code")) for e in errors)
    except ValueError:
        pass
    return response.text[:200] or f"HTTP {response.status_code}"

def extract_qr_code_url(intent: Dict[str, Any]) -> Optional[str]:
    """QR image URL from an attached intent's next_action, if present"""
    next_action = ((intent or {}).get("data") or {}).get("attributes", {}).get("next_action") or {}
    return (next_action.get("code") or {}).get("image_url")

def extract_checkout_url(intent: Dict[str, Any]) -> Optional[str]:
    next_action = ((intent or {}).get("data") or {}).get("attributes", {}).get("next_action") or {}
    return (next_action.get("redirect") or {}).get("url")

def extract_charge_id(intent: Dict[str, Any]) -> Optional[str]:
    """ID of the latest captured gateway payment on an intent"""
    payments = ((intent or {}).get("data") or {}).get("attributes", {}).get("payments") or []
    if payments:
        return payments[-1].get("id")
    return None
