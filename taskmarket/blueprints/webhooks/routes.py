# taskmarket/blueprints/webhooks/routes.py
import logging

from flask import jsonify, request

from ...errors import NotFound, UnsupportedPaymentMethod
from ...models.payment import PaymentMethod
from ...services.reconciliation import ReconciliationEngine
from . import webhooks_bp

log = logging.getLogger(__name__)


# Public: providers call this server-to-server, the gateway checks the signature
@webhooks_bp.post("/<provider>")
def provider_event(provider):
    try:
        method = PaymentMethod.parse(provider)
    except UnsupportedPaymentMethod:
        raise NotFound(f"Unknown provider {provider!r}", provider=provider) from None

    outcome = ReconciliationEngine.from_app().handle_provider_event(
        method, request.get_data(), dict(request.headers)
    )
    log.info(
        "Webhook %s status=%s payment_id=%s transitioned=%s",
        method.value, outcome.status, outcome.payment_id, outcome.transitioned,
    )
    return jsonify(outcome.to_dict()), 200
