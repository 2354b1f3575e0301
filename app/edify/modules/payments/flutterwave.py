from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from app.edify.modules.payments.base import GatewayClient, VerifiedPayment

_STATUS_MAP = {"successful": "successful", "failed": "failed", "cancelled": "failed"}


@dataclass(frozen=True)
class FlutterwaveClient(GatewayClient):
    provider = "flutterwave"

    secret_key: str = ""
    secret_hash: str = ""

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Authorization"] = f"Bearer {self.secret_key}"
        return headers

    def initialize_payment(
        self,
        *,
        tx_ref: str,
        amount: Decimal,
        currency: str,
        redirect_url: str,
        customer_email: str,
        customer_name: str,
        meta: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Returns data block with the hosted checkout `link`."""
        body: dict[str, Any] = {
            "tx_ref": tx_ref,
            "amount": str(amount),
            "currency": currency,
            "redirect_url": redirect_url,
            "customer": {"email": customer_email, "name": customer_name},
            "customizations": {"title": "EdifyPub", "description": f"Payment {tx_ref}"},
        }
        if meta:
            body["meta"] = meta
        j = self.request_json("POST", "/payments", json=body)
        return j.get("data") or {}

    def verify_transaction(self, transaction_id: str) -> VerifiedPayment:
        j = self.request_json("GET", f"/transactions/{quote(str(transaction_id), safe='')}/verify")
        return self.parse_transaction(j.get("data") or {})

    def verify_by_reference(self, tx_ref: str) -> VerifiedPayment:
        j = self.request_json("GET", "/transactions/verify_by_reference", params={"tx_ref": tx_ref})
        return self.parse_transaction(j.get("data") or {}, fallback_reference=tx_ref)

    def parse_transaction(self, data: dict[str, Any], *, fallback_reference: str | None = None) -> VerifiedPayment:
        amount = data.get("amount")
        customer = data.get("customer") or {}
        return VerifiedPayment(
            provider=self.provider,
            reference=str(data.get("tx_ref") or fallback_reference or ""),
            status=_STATUS_MAP.get(str(data.get("status") or "").lower(), "pending"),
            amount=Decimal(str(amount)).quantize(Decimal("0.01")) if amount is not None else None,
            currency=data.get("currency") or None,
            raw=data,
            transaction_id=str(data["id"]) if data.get("id") is not None else None,
            customer_email=customer.get("email"),
        )

    def validate_webhook(self, body: bytes, signature: str | None) -> bool:
        """
        Flutterwave sends the dashboard secret hash verbatim in `verif-hash`.
        Also accepts an HMAC-SHA256 hex digest of the body keyed with the secret key.
        """
        if not signature:
            return False
        signature = signature.strip()
        if self.secret_hash and hmac.compare_digest(self.secret_hash, signature):
            return True
        if self.secret_key:
            expected = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha256).hexdigest()
            return hmac.compare_digest(expected, signature)
        return False


def flutterwave_from_config(config) -> FlutterwaveClient:
    return FlutterwaveClient(
        base_url=config.get("FLUTTERWAVE_BASE_URL") or "https://api.flutterwave.com/v3",
        secret_key=config.get("FLUTTERWAVE_SECRET_KEY") or "",
        secret_hash=config.get("FLUTTERWAVE_SECRET_HASH") or "",
    )
