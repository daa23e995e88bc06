# taskmarket/services/gateways/card.py
from __future__ import annotations
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional

import stripe

from ...errors import (
    InvalidSignature, PaymentIncomplete, ProviderError, ProviderUnavailable,
)
from ...models.payment import PaymentMethod
from .base import (
    IntentHandle, PaymentGateway, ProviderConfirmation, ProviderEvent,
    lower_headers, metadata_payment_id, to_money,
)

log = logging.getLogger(__name__)

# payment_intent.* carries the intent itself; charge.* points at it
HANDLED_EVENTS = {"payment_intent.succeeded", "charge.succeeded"}


class CardGateway(PaymentGateway):
    """Card-network processor backed by Stripe PaymentIntents.

    The API key is passed per call instead of being set on the ``stripe``
    module, so two apps (or tests) in one process never share credentials.
    """

    method = PaymentMethod.CARD

    def __init__(self, *, api_key: Optional[str], webhook_secret: Optional[str],
                 currency: str = "USD"):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._currency = (currency or "USD").lower()

    # -----------------
    # Pull flow
    # -----------------

    def create_intent(self, amount: Decimal, metadata: Mapping[str, Any]) -> IntentHandle:
        cents = int((to_money(amount) * 100).to_integral_value())
        intent = self._call(
            stripe.PaymentIntent.create,
            amount=cents,
            currency=self._currency,
            metadata={k: str(v) for k, v in metadata.items()},
        )
        log.info("Stripe intent created id=%s payment_id=%s", intent["id"], metadata.get("payment_id"))
        return IntentHandle(reference=intent["id"], client_handle=intent.get("client_secret") or "")

    def confirm(self, reference: str) -> ProviderConfirmation:
        intent = self._call(stripe.PaymentIntent.retrieve, reference)
        status = (intent.get("status") or "").lower()
        if status != "succeeded":
            raise PaymentIncomplete(f"Card payment is {status or 'unknown'}", reference=reference, status=status)
        return self._from_intent(intent)

    # -----------------
    # Push flow
    # -----------------

    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ProviderEvent]:
        signature = lower_headers(headers).get("stripe-signature")
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        if not self._webhook_secret:
            raise ProviderError("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
            event = _plain(event)
        except ValueError as e:
            raise InvalidSignature("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid signature") from e

        event_type = event["type"]
        if event_type not in HANDLED_EVENTS:
            log.info("Stripe event ignored type=%s", event_type)
            return None

        obj = event["data"]["object"]
        payment_id = metadata_payment_id((obj.get("metadata") or {}).get("payment_id"))
        if payment_id is None:
            log.warning("Stripe event %s without payment_id metadata, ignored", event.get("id"))
            return None

        if event_type == "charge.succeeded":
            confirmation = self._from_charge(obj)
        else:
            confirmation = self._from_intent(obj)
        return ProviderEvent(
            provider=self.method,
            event_type=event_type,
            payment_id=payment_id,
            confirmation=confirmation,
        )

    # -----------------
    # Helpers
    # -----------------

    def _call(self, fn, *args, **kwargs):
        try:
            return _plain(fn(*args, api_key=self._api_key, **kwargs))
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            log.warning("Stripe unavailable: %s", e)
            raise ProviderUnavailable("Card processor unavailable") from e
        except stripe.APIError as e:
            log.warning("Stripe API error: %s", e)
            raise ProviderUnavailable("Card processor error") from e
        except stripe.StripeError as e:
            log.error("Stripe rejected request: %s", e)
            raise ProviderError(f"Card processor rejected the request: {e}") from e

    def _from_intent(self, intent) -> ProviderConfirmation:
        received = intent.get("amount_received") or intent.get("amount") or 0
        return ProviderConfirmation(
            provider=self.method,
            id=intent["id"],
            reference=intent["id"],
            status="COMPLETED",
            amount=to_money(Decimal(received) / 100),
            payer_email=intent.get("receipt_email"),
            captured_at=_ts(intent.get("created")),
        )

    def _from_charge(self, charge) -> ProviderConfirmation:
        billing = charge.get("billing_details") or {}
        return ProviderConfirmation(
            provider=self.method,
            id=charge["id"],
            reference=charge.get("payment_intent") or "",
            status="COMPLETED",
            amount=to_money(Decimal(charge.get("amount") or 0) / 100),
            payer_email=billing.get("email") or charge.get("receipt_email"),
            captured_at=_ts(charge.get("created")),
        )


def _plain(obj):
    """Stripe responses as nested plain dicts (StripeObject is not a dict on current SDKs)."""
    if hasattr(obj, "to_dict"):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {k: _plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_plain(v) for v in obj]
    return obj


def _ts(value) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
