"""Cart aggregator: add/remove idempotence and read-side self-healing."""

from __future__ import annotations

from decimal import Decimal

import pytest

from conftest import CLIENT, OTHER_CLIENT
from taskmarket.errors import AlreadyBilled, InvoiceNotFound
from taskmarket.services import cart_service, payment_ledger


@pytest.mark.unit
class TestAddInvoice:
    """Tests for add_invoice."""

    def test_add_creates_cart_lazily(self, app, make_invoice) -> None:
        inv = make_invoice("100.00")
        view = cart_service.add_invoice(CLIENT, inv)
        assert view.invoice_ids == [inv]
        assert view.total == Decimal("100.00")

    def test_adding_twice_is_a_no_op(self, app, make_invoice) -> None:
        inv = make_invoice("100.00")
        cart_service.add_invoice(CLIENT, inv)
        view = cart_service.add_invoice(CLIENT, inv)
        assert view.invoice_ids == [inv]

    def test_unknown_invoice(self, app) -> None:
        with pytest.raises(InvoiceNotFound):
            cart_service.add_invoice(CLIENT, 12345)

    def test_other_clients_invoice_is_not_found(self, app, make_invoice) -> None:
        """A client cannot stage someone else's invoice."""
        inv = make_invoice("10.00", client_id=OTHER_CLIENT)
        with pytest.raises(InvoiceNotFound):
            cart_service.add_invoice(CLIENT, inv)

    def test_billed_invoice_is_rejected(self, app, make_invoice) -> None:
        inv = make_invoice("10.00")
        payment_ledger.create_payment(CLIENT, [inv], "card")
        with pytest.raises(AlreadyBilled):
            cart_service.add_invoice(CLIENT, inv)


@pytest.mark.unit
class TestRemoveAndView:
    """Tests for remove_invoice and get_cart."""

    def test_remove_present_and_absent(self, app, make_invoice) -> None:
        a = make_invoice("100.00")
        b = make_invoice("50.00")
        cart_service.add_invoice(CLIENT, a)
        cart_service.add_invoice(CLIENT, b)

        view = cart_service.remove_invoice(CLIENT, a)
        assert view.invoice_ids == [b]
        # removing again, or from a client with no cart, is harmless
        assert cart_service.remove_invoice(CLIENT, a).invoice_ids == [b]
        assert cart_service.remove_invoice(OTHER_CLIENT, a).invoice_ids == []

    def test_empty_cart_for_unknown_client(self, app) -> None:
        view = cart_service.get_cart("nobody")
        assert view.invoice_ids == []
        assert view.total == Decimal("0.00")
        assert view.to_dict()["count"] == 0

    def test_invoice_billed_elsewhere_drops_out_of_view(self, app, make_invoice) -> None:
        """Another tab checked the invoice out directly: the cart heals on read."""
        a = make_invoice("100.00")
        b = make_invoice("50.00")
        cart_service.add_invoice(CLIENT, a)
        cart_service.add_invoice(CLIENT, b)

        payment_ledger.create_payment(CLIENT, [a], "wallet")

        view = cart_service.get_cart(CLIENT)
        assert view.invoice_ids == [b]
        assert view.total == Decimal("50.00")
        assert view.to_dict()["total"] == "50.00"

    def test_snapshot_and_discard(self, app, make_invoice) -> None:
        a = make_invoice("1.00")
        b = make_invoice("2.00")
        cart_service.add_invoice(CLIENT, a)
        cart_service.add_invoice(CLIENT, b)
        assert cart_service.snapshot_ids(CLIENT) == [a, b]

        assert cart_service.discard_invoices(CLIENT, [a]) == 1
        assert cart_service.snapshot_ids(CLIENT) == [b]
        assert cart_service.discard_invoices(OTHER_CLIENT, [b]) == 0
