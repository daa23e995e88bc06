"""App factory, config helpers and gateway wiring."""

from __future__ import annotations

import json_log_formatter
import pytest

from taskmarket import create_app
from taskmarket.config import Config, _as_bool, _as_list
from taskmarket.models.payment import PaymentMethod
from taskmarket.services.gateways import CardGateway, WalletGateway, build_gateways


@pytest.mark.unit
class TestConfigHelpers:
    """Tests for env parsing helpers."""

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("On", True), ("0", False), ("", False)])
    def test_as_bool(self, raw, expected) -> None:
        assert _as_bool(raw) is expected

    def test_as_bool_default(self) -> None:
        assert _as_bool(None, default=True) is True

    def test_as_list_upper_cases(self) -> None:
        assert _as_list("new, doing ,done", ["X"]) == ["NEW", "DOING", "DONE"]
        assert _as_list(None, ["X"]) == ["X"]


@pytest.mark.unit
class TestCreateApp:
    """Tests for create_app."""

    def test_json_logging(self, tmp_path) -> None:
        class JsonConfig(Config):
            SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
            LOG_DIR = str(tmp_path / "logs")
            LOG_JSON = True
            SENTRY_DSN = ""

        app = create_app(JsonConfig)
        assert (tmp_path / "logs" / "taskmarket.log").exists()
        assert any(isinstance(h.formatter, json_log_formatter.JSONFormatter) for h in app.logger.handlers)

    def test_blueprints_registered(self, app) -> None:
        rules = {r.rule for r in app.url_map.iter_rules()}
        assert {"/cart", "/payments/checkout", "/webhooks/<provider>",
                "/task-assignments/<int:assignment_id>/status"} <= rules


@pytest.mark.unit
def test_build_gateways_from_config() -> None:
    gateways = build_gateways({
        "STRIPE_SECRET_KEY": "sk", "STRIPE_WEBHOOK_SECRET": "wh",
        "PAYPAL_CLIENT_ID": "id", "PAYPAL_APP_SECRET": "sec",
        "PAYPAL_API_URL": "https://api.test/", "PAYMENT_CURRENCY": "EUR",
    })
    assert isinstance(gateways[PaymentMethod.CARD], CardGateway)
    assert isinstance(gateways[PaymentMethod.WALLET], WalletGateway)
