from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from app.edify.modules.payments.base import GatewayClient, VerifiedPayment, from_minor_units, to_minor_units

_STATUS_MAP = {"success": "successful", "failed": "failed", "abandoned": "failed", "reversed": "failed"}


@dataclass(frozen=True)
class PaystackClient(GatewayClient):
    provider = "paystack"

    secret_key: str = ""

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.secret_key}"
        return headers

    def initialize_transaction(
        self,
        *,
        email: str,
        amount: Decimal,
        reference: str,
        currency: str,
        callback_url: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Returns Paystack's data block: authorization_url, access_code, reference."""
        body: dict[str, Any] = {
            "email": email,
            "amount": to_minor_units(amount),  # kobo / cents
            "reference": reference,
            "currency": currency,
        }
        if callback_url:
            body["callback_url"] = callback_url
        if metadata:
            body["metadata"] = metadata
        j = self.request_json("POST", "/transaction/initialize", json=body)
        return j.get("data") or {}

    def verify_transaction(self, reference: str) -> VerifiedPayment:
        j = self.request_json("GET", f"/transaction/verify/{quote(reference, safe='')}")
        return self.parse_transaction(j.get("data") or {}, fallback_reference=reference)

    def parse_transaction(self, data: dict[str, Any], *, fallback_reference: str | None = None) -> VerifiedPayment:
        customer = data.get("customer") or {}
        return VerifiedPayment(
            provider=self.provider,
            reference=str(data.get("reference") or fallback_reference or ""),
            status=_STATUS_MAP.get(str(data.get("status") or "").lower(), "pending"),
            amount=from_minor_units(data.get("amount")),
            currency=(data.get("currency") or None),
            raw=data,
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
            customer_email=customer.get("email"),
        )

    def validate_webhook(self, body: bytes, signature: str | None) -> bool:
        """x-paystack-signature is HMAC-SHA512 of the raw body keyed with the secret key."""
        if not signature or not self.secret_key:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip())


def paystack_from_config(config) -> PaystackClient:
    return PaystackClient(
        base_url=config.get("PAYSTACK_BASE_URL") or "https://api.paystack.co",
        secret_key=config.get("PAYSTACK_SECRET_KEY") or "",
    )
