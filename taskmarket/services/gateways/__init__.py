from .base import (
    IntentHandle, PaymentGateway, ProviderConfirmation, ProviderEvent, to_money,
)
from .card import CardGateway
from .wallet import WalletGateway
from ...models.payment import PaymentMethod


def build_gateways(config) -> dict:
    """One gateway instance per provider, built from app config for this request."""
    currency = config.get("PAYMENT_CURRENCY", "USD")
    return {
        PaymentMethod.CARD: CardGateway(
            api_key=config.get("STRIPE_SECRET_KEY"),
            webhook_secret=config.get("STRIPE_WEBHOOK_SECRET"),
            currency=currency,
        ),
        PaymentMethod.WALLET: WalletGateway(
            client_id=config.get("PAYPAL_CLIENT_ID"),
            secret=config.get("PAYPAL_APP_SECRET"),
            api_base=config.get("PAYPAL_API_URL") or "https://api-m.sandbox.paypal.com",
            webhook_id=config.get("PAYPAL_WEBHOOK_ID"),
            currency=currency,
            timeout=int(config.get("PROVIDER_TIMEOUT_SECONDS", 20)),
        ),
    }


__all__ = [
    "CardGateway", "WalletGateway", "PaymentGateway", "ProviderConfirmation",
    "ProviderEvent", "IntentHandle", "build_gateways", "to_money",
]
