from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from urllib.parse import quote

from requests.auth import HTTPBasicAuth

from app.edify.modules.payments.base import GatewayClient, PaymentGatewayError, VerifiedPayment

MOMO_CURRENCIES = ("USD", "EUR")
_STATUS_MAP = {"SUCCESSFUL": "successful", "FAILED": "failed", "REJECTED": "failed", "TIMEOUT": "failed"}


def clean_msisdn(phone: str) -> str:
    return re.sub(r"[^\d]", "", phone or "")


@dataclass(frozen=True)
class MtnMomoClient(GatewayClient):
    provider = "mtn_momo"

    subscription_key: str = ""
    user_id: str = ""
    api_key: str = ""
    target_environment: str = "sandbox"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        headers["Ocp-Apim-Subscription-Key"] = self.subscription_key
        headers["X-Target-Environment"] = self.target_environment
        return headers

    def get_access_token(self) -> str:
        j = self.request_json("POST", "/collection/token/", auth=HTTPBasicAuth(self.user_id, self.api_key))
        token = j.get("access_token")
        if not token:
            raise PaymentGatewayError(self.provider, "No access token in response", payload=j)
        return str(token)

    def request_to_pay(
        self,
        *,
        reference: str,
        amount: Decimal,
        currency: str,
        phone_number: str,
        payer_message: str,
        payee_note: str,
        callback_url: str | None = None,
    ) -> None:
        token = self.get_access_token()
        headers = {"Authorization": f"Bearer {token}", "X-Reference-Id": reference}
        if callback_url:
            headers["X-Callback-Url"] = callback_url
        body: dict[str, Any] = {
            "amount": str(amount),
            "currency": currency,
            "externalId": reference,
            "payer": {"partyIdType": "MSISDN", "partyId": clean_msisdn(phone_number)},
            "payerMessage": payer_message,
            "payeeNote": payee_note,
        }
        # 202 Accepted with an empty body; the payer approves on their phone.
        self.request_json("POST", "/collection/v1_0/requesttopay", json=body, headers=headers)

    def get_transaction_status(self, reference: str) -> VerifiedPayment:
        token = self.get_access_token()
        j = self.request_json(
            "GET",
            f"/collection/v1_0/requesttopay/{quote(reference, safe='')}",
            headers={"Authorization": f"Bearer {token}"},
        )
        amount = j.get("amount")
        return VerifiedPayment(
            provider=self.provider,
            reference=str(j.get("externalId") or reference),
            status=_STATUS_MAP.get(str(j.get("status") or "").upper(), "pending"),
            amount=Decimal(str(amount)).quantize(Decimal("0.01")) if amount is not None else None,
            currency=j.get("currency") or None,
            raw=j,
            transaction_id=str(j["financialTransactionId"]) if j.get("financialTransactionId") else None,
        )


def momo_from_config(config) -> MtnMomoClient:
    return MtnMomoClient(
        base_url=config.get("MTN_MOMO_BASE_URL") or "https://sandbox.momodeveloper.mtn.com",
        subscription_key=config.get("MTN_MOMO_SUBSCRIPTION_KEY") or "",
        user_id=config.get("MTN_MOMO_USER_ID") or "",
        api_key=config.get("MTN_MOMO_API_KEY") or "",
        target_environment=config.get("MTN_MOMO_TARGET_ENVIRONMENT") or "sandbox",
    )
