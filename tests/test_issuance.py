import threading

import pytest

from cart import Cart, CartState
from errors import InsufficientStock, ValidationError
from issuance import DocumentIssuer, next_reference
from tests.factories import OWNER, document


@pytest.fixture
def issuer(store):
    return DocumentIssuer(store)


@pytest.fixture
def cart(store):
    return Cart(lambda product_id: store.get_product(OWNER, product_id))


def fill(cart, product, quantity):
    for _ in range(quantity):
        cart.add(product)


class TestIssue:
    def test_invoice_decrements_stock_and_persists_one_document(self, store, issuer, cart, session, customer,
                                                                 add_product):
        a = add_product(name="Stylo", stock=5, sale_price=10.0)
        fill(cart, a, 3)
        assert cart.quantity_of(a.id) == 3

        doc = issuer.issue(session, cart, customer, "invoice", 0.2)

        assert store.get_product(OWNER, a.id).stock == 2
        docs = store.list_documents(OWNER)
        assert len(docs) == 1
        assert docs[0].status == "Paid"
        assert docs[0].total_ht == pytest.approx(30.0)
        assert docs[0].total_ht + docs[0].total_tva == docs[0].total_ttc
        assert doc.reference.startswith("INVOICE-")
        assert cart.is_empty()

    def test_delivery_note_consumes_stock(self, store, issuer, cart, session, customer, add_product):
        a = add_product(stock=4)
        fill(cart, a, 4)
        doc = issuer.issue(session, cart, customer, "delivery_note", 0.2)
        assert doc.status == "Delivered"
        assert store.get_product(OWNER, a.id).stock == 0

    def test_quote_reserves_nothing(self, store, issuer, cart, session, customer, add_product):
        a = add_product(stock=5)
        fill(cart, a, 2)
        doc = issuer.issue(session, cart, customer, "quote", 0.2)
        assert doc.status == "Draft"
        assert store.get_product(OWNER, a.id).stock == 5

    def test_customer_and_items_are_snapshots(self, store, issuer, cart, session, customer, add_product):
        a = add_product(name="Stylo", sale_price=10.0)
        cart.add(a)
        doc = issuer.issue(session, cart, customer, "invoice", 0.2)

        store.upsert_customer(OWNER, customer.model_copy(update={"name": "Renamed"}), customer.id)
        store.upsert_product(OWNER, a.model_copy(update={"sale_price": 99.0}), a.id)

        stored = store.get_document(OWNER, doc.id)
        assert stored.customer.name == "Alami SARL"
        assert stored.customer.ice == "001122334455667"
        assert stored.items[0].sale_price == 10.0

    def test_empty_cart(self, issuer, cart, session, customer):
        with pytest.raises(ValidationError):
            issuer.issue(session, cart, customer, "invoice", 0.2)

    def test_no_customer(self, issuer, cart, session, add_product):
        cart.add(add_product())
        with pytest.raises(ValidationError):
            issuer.issue(session, cart, None, "invoice", 0.2)

    def test_not_authenticated(self, issuer, cart, customer, add_product):
        cart.add(add_product())
        with pytest.raises(ValidationError):
            issuer.issue(None, cart, customer, "invoice", 0.2)

    def test_rejects_cart_already_issuing(self, issuer, cart, session, customer, add_product):
        cart.add(add_product())
        cart.issuing = True
        assert cart.state is CartState.ISSUING
        with pytest.raises(ValidationError):
            issuer.issue(session, cart, customer, "invoice", 0.2)

    def test_concurrent_checkout_issues_once(self, store, issuer, cart, session, customer, add_product,
                                             monkeypatch):
        a = add_product(stock=5)
        fill(cart, a, 2)
        committing, release = threading.Event(), threading.Event()
        commit = store.commit

        def slow_commit(*args, **kwargs):
            committing.set()
            release.wait(5)
            return commit(*args, **kwargs)

        monkeypatch.setattr(store, "commit", slow_commit)
        first = threading.Thread(target=issuer.issue, args=(session, cart, customer, "invoice", 0.2))
        first.start()
        assert committing.wait(5)
        try:
            with pytest.raises(ValidationError):
                issuer.issue(session, cart, customer, "invoice", 0.2)
        finally:
            release.set()
            first.join(5)

        assert len(store.list_documents(OWNER)) == 1
        assert store.get_product(OWNER, a.id).stock == 3
        assert cart.state is CartState.EMPTY

    def test_line_sold_out_in_cart_is_dropped_before_issuing(self, store, issuer, cart, session, customer,
                                                              add_product):
        a = add_product(name="Stylo", stock=3)
        b = add_product(name="Cahier", stock=3)
        cart.add(a)
        cart.add(b)
        store.decrement_stock(OWNER, a.id, 3)
        cart.set_quantity(a.id, 2)

        doc = issuer.issue(session, cart, customer, "quote", 0.2)
        assert [i.name for i in doc.items] == ["Cahier"]


class TestStockCheck:
    def test_reports_every_short_line_and_writes_nothing(self, store, issuer, cart, session, customer,
                                                          add_product):
        a = add_product(name="Stylo", stock=5)
        b = add_product(name="Cahier", stock=3)
        c = add_product(name="Gomme", stock=3)
        fill(cart, a, 4)
        fill(cart, b, 3)
        fill(cart, c, 1)
        # another session sells in the meantime
        store.decrement_stock(OWNER, a.id, 2)
        store.decrement_stock(OWNER, b.id, 3)

        with pytest.raises(InsufficientStock) as exc:
            issuer.issue(session, cart, customer, "invoice", 0.2)

        assert [(line.name, line.requested, line.available) for line in exc.value.lines] == [
            ("Stylo", 4, 3), ("Cahier", 3, 0)]
        assert store.list_documents(OWNER) == []
        assert store.get_product(OWNER, a.id).stock == 3
        assert store.get_product(OWNER, c.id).stock == 3
        assert cart.quantity_of(a.id) == 4
        assert cart.state is CartState.BUILDING

    def test_deleted_product_counts_as_zero_available(self, store, issuer, cart, session, customer, add_product):
        a = add_product(name="Stylo", stock=5)
        cart.add(a)
        store.delete_product(OWNER, a.id)

        with pytest.raises(InsufficientStock) as exc:
            issuer.issue(session, cart, customer, "invoice", 0.2)
        assert exc.value.lines[0].available == 0

    def test_quote_skips_the_check(self, store, issuer, cart, session, customer, add_product):
        a = add_product(stock=2)
        fill(cart, a, 2)
        store.decrement_stock(OWNER, a.id, 2)
        assert issuer.issue(session, cart, customer, "quote", 0.2).status == "Draft"


class TestConvert:
    def test_quote_to_invoice(self, store, issuer, cart, session, customer, add_product):
        b = add_product(name="Cahier", stock=1, sale_price=2.5)
        cart.add(b)
        quote = issuer.issue(session, cart, customer, "quote", 0.2)
        assert store.get_product(OWNER, b.id).stock == 1
        assert len(store.list_documents(OWNER)) == 1

        invoice = issuer.convert_quote_to_invoice(session, store.get_document(OWNER, quote.id))

        assert store.get_product(OWNER, b.id).stock == 0
        assert invoice.type == "invoice"
        assert invoice.status == "Paid"
        assert invoice.quote_ref == quote.reference
        assert invoice.reference != quote.reference
        assert invoice.total_ttc == quote.total_ttc
        assert store.get_document(OWNER, quote.id).status == "Converted"
        assert len(store.list_documents(OWNER)) == 2

    def test_only_draft_quotes(self, store, issuer, cart, session, customer, add_product):
        cart.add(add_product(stock=5))
        quote = issuer.issue(session, cart, customer, "quote", 0.2)
        issuer.convert_quote_to_invoice(session, store.get_document(OWNER, quote.id))

        with pytest.raises(ValidationError):
            issuer.convert_quote_to_invoice(session, store.get_document(OWNER, quote.id))

    def test_invoices_cannot_be_converted(self, store, issuer, cart, session, customer, add_product):
        cart.add(add_product(stock=5))
        invoice = issuer.issue(session, cart, customer, "invoice", 0.2)
        with pytest.raises(ValidationError):
            issuer.convert_quote_to_invoice(session, invoice)

    def test_short_stock_leaves_quote_draft(self, store, issuer, cart, session, customer, add_product):
        a = add_product(stock=3)
        fill(cart, a, 3)
        quote = issuer.issue(session, cart, customer, "quote", 0.2)
        store.decrement_stock(OWNER, a.id, 1)

        with pytest.raises(InsufficientStock):
            issuer.convert_quote_to_invoice(session, store.get_document(OWNER, quote.id))
        assert store.get_document(OWNER, quote.id).status == "Draft"
        assert store.get_product(OWNER, a.id).stock == 2
        assert len(store.list_documents(OWNER)) == 1


class TestStatusAndDeletion:
    def test_cancel_invoice(self, store, issuer, cart, session, customer, add_product):
        cart.add(add_product())
        doc = issuer.issue(session, cart, customer, "invoice", 0.2)
        issuer.update_status(session, doc, "Cancelled")
        assert store.get_document(OWNER, doc.id).status == "Cancelled"

    def test_converted_quote_is_final(self, store, issuer, cart, session, customer, add_product):
        cart.add(add_product())
        quote = issuer.issue(session, cart, customer, "quote", 0.2)
        issuer.convert_quote_to_invoice(session, store.get_document(OWNER, quote.id))
        with pytest.raises(ValidationError):
            issuer.update_status(session, store.get_document(OWNER, quote.id), "Cancelled")

    def test_only_cancellation_is_manual(self, issuer, session):
        with pytest.raises(ValidationError):
            issuer.update_status(session, document(status="Paid"), "Draft")

    def test_deleting_a_document_does_not_restock(self, store, issuer, cart, session, customer, add_product):
        a = add_product(stock=5)
        fill(cart, a, 2)
        doc = issuer.issue(session, cart, customer, "invoice", 0.2)
        store.delete_document(OWNER, doc.id)
        assert store.get_product(OWNER, a.id).stock == 3
        assert store.list_documents(OWNER) == []


def test_references_are_increasing():
    refs = [int(next_reference("quote").split("-")[1]) for _ in range(5)]
    assert refs == sorted(set(refs))
