# taskmarket/services/gateways/base.py
"""Provider-neutral types every payment gateway speaks."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional

from ...models.payment import PaymentMethod
from ...utils import to_money


@dataclass(frozen=True)
class ProviderConfirmation:
    provider: PaymentMethod
    id: str                # provider capture/charge id
    reference: str         # provider transaction id stored on the Payment
    status: str
    amount: Decimal
    payer_email: Optional[str] = None
    captured_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "provider": self.provider.value,
            "id": self.id,
            "reference": self.reference,
            "status": self.status,
            "amount": str(self.amount),
            "payer_email": self.payer_email,
            "captured_at": self.captured_at.isoformat() if self.captured_at else None,
        }


@dataclass(frozen=True)
class IntentHandle:
    reference: str       # persisted as Payment.provider_reference
    client_handle: str   # client secret / order id handed to the provider UI
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderEvent:
    provider: PaymentMethod
    event_type: str
    payment_id: int
    confirmation: ProviderConfirmation


class PaymentGateway(ABC):
    method: PaymentMethod

    @abstractmethod
    def create_intent(self, amount: Decimal, metadata: Mapping[str, Any]) -> IntentHandle:
        """Open a provider-side transaction. ``metadata`` must carry ``payment_id``."""

    @abstractmethod
    def confirm(self, reference: str) -> ProviderConfirmation:
        """Pull flow: capture or look up ``reference`` and report the result."""

    @abstractmethod
    def parse_event(self, payload: bytes, headers: Mapping[str, str]) -> Optional[ProviderEvent]:
        """Push flow: verify and decode a webhook. ``None`` for unrelated events."""


def lower_headers(headers: Mapping[str, str]) -> dict[str, str]:
    return {str(k).lower(): v for k, v in dict(headers or {}).items()}


def metadata_payment_id(raw) -> Optional[int]:
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None
