"""
Duitku Payment Gateway client.

Every call returns a GatewayResult instead of raising:
  - success=True  → `data` holds the normalized gateway response
  - success=False → `message` holds the gateway (or transport) error

Signatures:
  - inquiry / transaction status: md5(merchantCode + merchantOrderId + amount + apiKey)
  - payment methods:              sha256(merchantCode + amount + datetime + apiKey)
  - callback:                     md5(merchantCode + amount + merchantOrderId + apiKey)
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx

from config import settings as default_settings
from services.clock import utcnow

logger = logging.getLogger(__name__)

PRODUCT_DETAILS = "Snaplove Premium Subscription - 1 Month"

CALLBACK_STATUS = {
    "00": "success",
    "01": "failed",
}

TRANSACTION_STATUS = {
    "00": "success",
    "02": "failed",
}


@dataclass
class GatewayResult:
    success: bool
    data: Any = None
    message: str | None = None


@dataclass
class Customer:
    first_name: str
    last_name: str
    email: str
    phone: str = "-"
    address: str = "Indonesia"
    city: str = "Jakarta"
    postal_code: str = "10000"
    country_code: str = "ID"

    def _address_block(self) -> dict:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "address": self.address,
            "city": self.city,
            "postalCode": self.postal_code,
            "phone": self.phone,
            "countryCode": self.country_code,
        }

    def to_payload(self) -> dict:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phoneNumber": self.phone,
            "billingAddress": self._address_block(),
            "shippingAddress": self._address_block(),
        }


def md5_hex(value: str) -> str:
    return hashlib.md5(value.encode()).hexdigest()


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()


@dataclass
class DuitkuClient:
    merchant_code: str
    api_key: str
    base_url: str
    sandbox: bool = True
    timeout: float = 15.0
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings=default_settings) -> "DuitkuClient":
        return cls(
            merchant_code=settings.DUITKU_MERCHANT_CODE,
            api_key=settings.DUITKU_API_KEY,
            base_url=settings.duitku_base_url.rstrip("/"),
            sandbox=not settings.is_production,
            timeout=settings.DUITKU_TIMEOUT_SECONDS,
        )

    # ── Signatures ─────────────────────────────────────────

    def transaction_signature(self, order_id: str, amount: int | str) -> str:
        return md5_hex(f"{self.merchant_code}{order_id}{amount}{self.api_key}")

    def payment_method_signature(self, amount: int | str, timestamp: str) -> str:
        return sha256_hex(f"{self.merchant_code}{amount}{timestamp}{self.api_key}")

    def sign_callback(self, amount: int | str, order_id: str) -> str:
        return md5_hex(f"{self.merchant_code}{amount}{order_id}{self.api_key}")

    # ── HTTP ───────────────────────────────────────────────

    async def _post(self, path: str, payload: dict) -> dict:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Content-Type": "application/json"},
            )
        body = resp.json()
        if resp.status_code >= 400:
            message = body.get("Message") or body.get("statusMessage") or f"HTTP {resp.status_code}"
            raise httpx.HTTPStatusError(message, request=resp.request, response=resp)
        return body

    @staticmethod
    def _error_message(exc: Exception) -> str:
        if isinstance(exc, httpx.HTTPStatusError):
            return str(exc)
        return str(exc) or exc.__class__.__name__

    # ── Operations ─────────────────────────────────────────

    async def get_payment_methods(self, amount: int) -> GatewayResult:
        """List the payment channels enabled for this merchant, with their fee."""
        timestamp = utcnow().strftime("%Y-%m-%d %H:%M:%S")
        payload = {
            "merchantcode": self.merchant_code,
            "amount": amount,
            "datetime": timestamp,
            "signature": self.payment_method_signature(amount, timestamp),
        }
        try:
            body = await self._post("/paymentmethod/getpaymentmethod", payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Duitku get payment methods failed: %s", e)
            return GatewayResult(success=False, message=self._error_message(e))

        if body.get("responseCode") == "00":
            return GatewayResult(success=True, data=body.get("paymentFee") or [])
        return GatewayResult(success=False, message=body.get("responseMessage"))

    async def create_transaction(
        self,
        order_id: str,
        amount: int,
        payment_method: str,
        customer: Customer,
        callback_url: str,
        return_url: str,
        expiry_minutes: int = 1440,
        product_details: str = PRODUCT_DETAILS,
    ) -> GatewayResult:
        """Create a payment (VA number / QR string / payment URL) for one order id."""
        payload = {
            "merchantCode": self.merchant_code,
            "paymentAmount": amount,
            "paymentMethod": payment_method,
            "merchantOrderId": order_id,
            "productDetails": product_details,
            "customerVaName": f"{customer.first_name} {customer.last_name}".strip(),
            "email": customer.email,
            "phoneNumber": customer.phone,
            "itemDetails": [{"name": product_details, "price": amount, "quantity": 1}],
            "customerDetail": customer.to_payload(),
            "callbackUrl": callback_url,
            "returnUrl": return_url,
            "signature": self.transaction_signature(order_id, amount),
            "expiryPeriod": expiry_minutes,
        }
        try:
            body = await self._post("/v2/inquiry", payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Duitku create transaction failed: order_id=%s error=%s", order_id, e)
            return GatewayResult(success=False, message=self._error_message(e))

        if body.get("statusCode") != "00":
            logger.warning("Duitku rejected transaction %s: %s", order_id, body.get("statusMessage"))
            return GatewayResult(success=False, message=body.get("statusMessage"))

        return GatewayResult(
            success=True,
            data={
                "merchant_code": body.get("merchantCode"),
                "reference": body.get("reference"),
                "payment_url": body.get("paymentUrl"),
                "va_number": body.get("vaNumber"),
                "qr_string": body.get("qrString"),
                "amount": body.get("amount"),
                "status_message": body.get("statusMessage"),
            },
        )

    async def check_transaction_status(self, order_id: str) -> GatewayResult:
        payload = {
            "merchantCode": self.merchant_code,
            "merchantOrderId": order_id,
            "signature": self.transaction_signature(order_id, 0),
        }
        try:
            body = await self._post("/transactionStatus", payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Duitku status check failed: order_id=%s error=%s", order_id, e)
            return GatewayResult(success=False, message=self._error_message(e))

        return GatewayResult(
            success=True,
            data={
                "merchant_order_id": body.get("merchantOrderId"),
                "reference": body.get("reference"),
                "amount": body.get("amount"),
                "fee": body.get("fee"),
                "status_code": body.get("statusCode"),
                "status_message": body.get("statusMessage"),
            },
        )

    def verify_callback(self, payload: dict) -> GatewayResult:
        """Check a callback's signature and normalize its fields."""
        merchant_code = str(payload.get("merchantCode") or "")
        amount = str(payload.get("amount") or "")
        order_id = str(payload.get("merchantOrderId") or "")
        signature = str(payload.get("signature") or "")

        expected = md5_hex(f"{merchant_code}{amount}{order_id}{self.api_key}")
        if not signature or not hmac.compare_digest(signature.encode(), expected.encode()):
            return GatewayResult(success=False, message="Invalid signature")

        try:
            parsed_amount = int(amount)
        except ValueError:
            return GatewayResult(success=False, message="Invalid amount")

        return GatewayResult(
            success=True,
            data={
                "merchant_order_id": order_id,
                "reference": payload.get("reference"),
                "amount": parsed_amount,
                "payment_code": payload.get("paymentCode"),
                "status": CALLBACK_STATUS.get(str(payload.get("resultCode")), "pending"),
                "publisher_order_id": payload.get("publisherOrderId"),
                "settlement_date": payload.get("settlementDate"),
                "issuer_code": payload.get("issuerCode"),
                "merchant_user_id": payload.get("merchantUserId"),
            },
        )

    async def request_refund(self, reference: str | None, amount: int, reason: str) -> GatewayResult:
        """Refund a settled payment. The sandbox approves immediately without a network call."""
        if self.sandbox:
            refund_reference = f"REFUND-{reference or 'SANDBOX'}-{secrets.token_hex(4).upper()}"
            logger.info("Sandbox refund approved: reference=%s amount=%s", reference, amount)
            return GatewayResult(
                success=True,
                data={"refund_reference": refund_reference, "status": "processed"},
            )

        if not reference:
            return GatewayResult(success=False, message="Missing gateway reference")

        payload = {
            "merchantCode": self.merchant_code,
            "reference": reference,
            "amount": amount,
            "reason": reason,
            "signature": md5_hex(f"{self.merchant_code}{reference}{amount}{self.api_key}"),
        }
        try:
            body = await self._post("/refund", payload)
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Duitku refund failed: reference=%s error=%s", reference, e)
            return GatewayResult(success=False, message=self._error_message(e))

        if body.get("statusCode") != "00":
            return GatewayResult(success=False, message=body.get("statusMessage") or "Refund rejected")
        return GatewayResult(
            success=True,
            data={
                "refund_reference": body.get("refundReference") or body.get("reference"),
                "status": "processed",
            },
        )


def parse_settlement_date(value: str | None) -> datetime | None:
    """Duitku sends `YYYY-MM-DD` or `YYYY-MM-DD HH:MM:SS`."""
    if not value:
        return None
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    logger.warning("Unparseable settlement date: %s", value)
    return None
