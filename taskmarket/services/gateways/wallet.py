# taskmarket/services/gateways/wallet.py
from __future__ import annotations
import json
import logging
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

import requests

from ...errors import (
    AlreadyCaptured, InvalidSignature, PaymentIncomplete, ProviderError, ProviderUnavailable,
)
from ...models.payment import PaymentMethod
from .base import (
    IntentHandle, PaymentGateway, ProviderConfirmation, ProviderEvent,
    lower_headers, metadata_payment_id, to_money,
)

log = logging.getLogger(__name__)

CAPTURE_COMPLETED = "PAYMENT.CAPTURE.COMPLETED"
ORDER_COMPLETED = "CHECKOUT.ORDER.COMPLETED"


class WalletGateway(PaymentGateway):
    """Wallet-style processor on the PayPal Orders v2 REST API."""

    method = PaymentMethod.WALLET

    def __init__(self, *, client_id: Optional[str], secret: Optional[str], api_base: str,
                 webhook_id: Optional[str] = None, currency: str = "USD", timeout: int = 20,
                 session: Optional[requests.Session] = None):
        self._client_id = client_id
        self._secret = secret
        self._api_base = api_base.rstrip("/")
        self._webhook_id = webhook_id
        self._currency = (currency or "USD").upper()
        self._timeout = timeout
        self._http = session or requests.Session()
        self._token: Optional[str] = None
        self._token_exp = 0.0

    # -----------------
    # Auth
    # -----------------

    def _auth_token(self) -> str:
        """Fetch or reuse the OAuth client-credentials token."""
        now = time.time()
        if self._token and now < self._token_exp - 30:
            return self._token
        try:
            resp = self._http.post(
                f"{self._api_base}/v1/oauth2/token",
                data={"grant_type": "client_credentials"},
                auth=(self._client_id or "", self._secret or ""),
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            log.warning("PayPal token request failed: %s", e)
            raise ProviderUnavailable("Wallet processor unavailable") from e
        if resp.status_code >= 500:
            raise ProviderUnavailable("Wallet processor unavailable", status=resp.status_code)
        if resp.status_code >= 400:
            log.error("PayPal auth rejected status=%s", resp.status_code)
            raise ProviderError("Wallet processor rejected our credentials", status=resp.status_code)
        data = resp.json()
        self._token = data["access_token"]
        self._token_exp = now + int(data.get("expires_in", 300))
        return self._token

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self._auth_token()}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        headers.update(kwargs.pop("headers", {}))
        try:
            resp = self._http.request(
                method, f"{self._api_base}{path}", headers=headers, timeout=self._timeout, **kwargs
            )
        except requests.RequestException as e:
            log.warning("PayPal %s %s failed: %s", method, path, e)
            raise ProviderUnavailable("Wallet processor unavailable") from e
        log.info("PayPal %s %s status=%s", method, path, resp.status_code)
        if resp.status_code >= 500:
            raise ProviderUnavailable("Wallet processor unavailable", status=resp.status_code)
        return resp

    # -----------------
    # Pull flow
    # -----------------

    def create_intent(self, amount: Decimal, metadata: Mapping[str, Any]) -> IntentHandle:
        payment_id = str(metadata["payment_id"])
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": payment_id,
                    "custom_id": payment_id,
                    "amount": {"currency_code": self._currency, "value": f"{to_money(amount):.2f}"},
                }
            ],
        }
        resp = self._request(
            "POST", "/v2/checkout/orders",
            json=payload,
            headers={"PayPal-Request-Id": f"payment-{payment_id}-{uuid.uuid4().hex}"},
        )
        if resp.status_code >= 400:
            log.error("PayPal create order error %s | body=%s", resp.status_code, resp.text)
            raise ProviderError("Wallet processor rejected the order", status=resp.status_code)
        data = resp.json()
        approve = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")),
            None,
        )
        log.info("PayPal order created id=%s payment_id=%s", data["id"], payment_id)
        return IntentHandle(reference=data["id"], client_handle=data["id"], extra={"approve_url": approve})

    def confirm(self, reference: str) -> ProviderConfirmation:
        resp = self._request("POST", f"/v2/checkout/orders/{reference}/capture")
        if resp.status_code == 422 and _issue(resp) == "ORDER_ALREADY_CAPTURED":
            order = self._get_order(reference)
            raise AlreadyCaptured(self._from_order(order))
        if resp.status_code >= 400:
            issue = _issue(resp)
            log.warning("PayPal capture rejected status=%s issue=%s", resp.status_code, issue)
            if issue in ("ORDER_NOT_APPROVED", "PAYER_ACTION_REQUIRED"):
                raise PaymentIncomplete("Wallet payment not approved yet", reference=reference, issue=issue)
            raise ProviderError("Wallet processor rejected the capture", status=resp.status_code, issue=issue)
        data = resp.json()
        if (data.get("status") or "").upper() != "COMPLETED":
            raise PaymentIncomplete(
                f"Wallet payment is {data.get('status') or 'unknown'}", reference=reference
            )
        return self._from_order(data)

    def _get_order(self, reference: str) -> dict:
        resp = self._request("GET", f"/v2/checkout/orders/{reference}")
        if resp.status_code >= 400:
            raise ProviderError("Wallet order lookup failed", status=resp.status_code)
        return resp.json()

    # -----------------
    # Push flow
    # -----------------

    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ProviderEvent]:
        try:
            event = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise InvalidSignature("Invalid payload") from e
        self._verify_signature(event, lower_headers(headers))

        event_type = event.get("event_type")
        resource = event.get("resource") or {}
        if event_type == CAPTURE_COMPLETED:
            confirmation = self._from_capture(resource)
            raw_payment_id = resource.get("custom_id")
        elif event_type == ORDER_COMPLETED:
            confirmation = self._from_order(resource)
            units = resource.get("purchase_units") or [{}]
            raw_payment_id = units[0].get("custom_id")
        else:
            log.info("PayPal event ignored type=%s", event_type)
            return None

        payment_id = metadata_payment_id(raw_payment_id)
        if payment_id is None:
            log.warning("PayPal event %s without custom_id, ignored", event.get("id"))
            return None
        return ProviderEvent(
            provider=self.method,
            event_type=event_type,
            payment_id=payment_id,
            confirmation=confirmation,
        )

    def _verify_signature(self, event: dict, headers: dict) -> None:
        if not self._webhook_id:
            raise ProviderError("PayPal webhook id is not configured")
        required = {
            "auth_algo": "paypal-auth-algo",
            "cert_url": "paypal-cert-url",
            "transmission_id": "paypal-transmission-id",
            "transmission_sig": "paypal-transmission-sig",
            "transmission_time": "paypal-transmission-time",
        }
        body = {field: headers.get(header) for field, header in required.items()}
        if not all(body.values()):
            raise InvalidSignature("Missing PayPal transmission headers")
        body.update(webhook_id=self._webhook_id, webhook_event=event)

        resp = self._request("POST", "/v1/notifications/verify-webhook-signature", json=body)
        if resp.status_code >= 400 or resp.json().get("verification_status") != "SUCCESS":
            raise InvalidSignature("Invalid signature")

    # -----------------
    # Parsing
    # -----------------

    def _from_order(self, order: dict) -> ProviderConfirmation:
        units = order.get("purchase_units") or [{}]
        captures = ((units[0].get("payments") or {}).get("captures")) or [{}]
        capture = captures[0]
        amount = (capture.get("amount") or units[0].get("amount") or {}).get("value", "0")
        return ProviderConfirmation(
            provider=self.method,
            id=capture.get("id") or order["id"],
            reference=order["id"],
            status=(order.get("status") or "").upper(),
            amount=to_money(amount),
            payer_email=(order.get("payer") or {}).get("email_address"),
            captured_at=_iso(capture.get("create_time")),
        )

    def _from_capture(self, capture: dict) -> ProviderConfirmation:
        related = ((capture.get("supplementary_data") or {}).get("related_ids")) or {}
        return ProviderConfirmation(
            provider=self.method,
            id=capture["id"],
            reference=related.get("order_id") or "",
            status=(capture.get("status") or "").upper(),
            amount=to_money((capture.get("amount") or {}).get("value", "0")),
            payer_email=None,
            captured_at=_iso(capture.get("create_time")),
        )


def _issue(resp: requests.Response) -> Optional[str]:
    try:
        details = resp.json().get("details") or [{}]
    except ValueError:
        return None
    return details[0].get("issue")


def _iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return None
