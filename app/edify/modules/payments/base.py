from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import requests

logger = logging.getLogger(__name__)


class PaymentGatewayError(RuntimeError):
    def __init__(self, provider: str, message: str, *, status_code: int | None = None, payload: Any = None) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message
        self.status_code = status_code
        self.payload = payload


@dataclass(frozen=True)
class VerifiedPayment:
    """Provider-neutral verification result."""

    provider: str
    reference: str
    status: str  # successful | failed | pending
    amount: Decimal | None
    currency: str | None
    raw: dict[str, Any]
    transaction_id: str | None = None
    customer_email: str | None = None

    @property
    def is_successful(self) -> bool:
        return self.status == "successful"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


@dataclass(frozen=True)
class GatewayClient:
    provider = "gateway"

    base_url: str
    timeout_seconds: int = 30
    session: requests.Session = field(default_factory=requests.Session, repr=False, compare=False)

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "Accept": "application/json"}

    def request_json(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        auth: Any = None,
        retries: int = 2,
    ) -> dict[str, Any]:
        url = self.base_url.rstrip("/") + path
        hdrs = self._headers()
        if headers:
            hdrs.update(headers)

        last_err: Exception | None = None
        for attempt in range(retries + 1):
            try:
                resp = self.session.request(
                    method,
                    url,
                    json=json,
                    params={k: v for k, v in (params or {}).items() if v is not None} or None,
                    headers=hdrs,
                    auth=auth,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as e:
                last_err = e
                logger.warning("%s request error (attempt %s) %s %s: %s", self.provider, attempt + 1, method, path, e)
                time.sleep(min(1 * (attempt + 1), 5))
                continue

            if resp.status_code == 429:
                # rate limit; brief backoff
                last_err = PaymentGatewayError(self.provider, "Rate limited (429)", status_code=429)
                time.sleep(min(2 * (attempt + 1), 10))
                continue

            body: dict[str, Any] = {}
            if resp.content:
                try:
                    parsed = resp.json()
                except ValueError as e:
                    raise PaymentGatewayError(self.provider, f"Invalid JSON from {path}", status_code=resp.status_code) from e
                body = parsed if isinstance(parsed, dict) else {"data": parsed}

            if resp.status_code >= 400:
                message = body.get("message") or body.get("error") or f"HTTP {resp.status_code}"
                logger.error("%s HTTP %s %s %s: %s", self.provider, resp.status_code, method, path, message)
                raise PaymentGatewayError(self.provider, str(message), status_code=resp.status_code, payload=body)
            return body

        raise PaymentGatewayError(self.provider, f"Request failed after retries: {last_err}")


def to_minor_units(amount: Decimal) -> int:
    """Decimal major units -> integer minor units (kobo, cents)."""
    return int((Decimal(amount) * 100).quantize(Decimal("1")))


def from_minor_units(value: Any) -> Decimal | None:
    if value is None:
        return None
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))
