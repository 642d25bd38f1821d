import pytest

import metrics
from tests.factories import document, item, product


class TestProductMargin:
    def test_margin_on_sale_price(self):
        assert metrics.product_margin(100, 60) == pytest.approx(40.0)

    def test_no_sale_price_means_zero(self):
        assert metrics.product_margin(0, 60) == 0
        assert metrics.product_margin(0, 0) == 0


class TestStock:
    def test_stock_value(self):
        products = [product(id="a", stock=3, sale_price=10), product(id="b", stock=2, sale_price=2.5)]
        assert metrics.stock_value(products) == pytest.approx(35.0)

    def test_low_stock_sorted_ascending(self):
        products = [product(id="a", stock=10), product(id="b", stock=11), product(id="c", stock=0),
                    product(id="d", stock=4)]
        assert [p.id for p in metrics.low_stock(products)] == ["c", "d", "a"]

    def test_empty_inputs(self):
        assert metrics.stock_value([]) == 0
        assert metrics.low_stock([]) == []
        assert metrics.best_sellers([]) == []
        assert metrics.revenue_report([], []) == metrics.RevenueReport()


class TestBestSellers:
    def test_groups_by_ref_over_active_invoices_only(self):
        docs = [
            document(id="1", items=[item(ref="A", quantity=2), item(ref="B", quantity=1)]),
            document(id="2", items=[item(ref="B", quantity=4)]),
            document(id="3", status="Cancelled", items=[item(ref="A", quantity=50)]),
            document(id="4", type="quote", status="Draft", items=[item(ref="A", quantity=50)]),
            document(id="5", type="delivery_note", status="Delivered", items=[item(ref="A", quantity=50)]),
        ]
        rows = metrics.best_sellers(docs)
        assert [(r.ref, r.quantity) for r in rows] == [("B", 5), ("A", 2)]

    def test_ties_keep_first_occurrence_order(self):
        docs = [document(id="1", items=[item(ref="X", quantity=3), item(ref="Y", quantity=3),
                                        item(ref="Z", quantity=3)])]
        assert [r.ref for r in metrics.best_sellers(docs)] == ["X", "Y", "Z"]

        reordered = [document(id="1", items=[item(ref="Z", quantity=3), item(ref="X", quantity=3),
                                             item(ref="Y", quantity=3)])]
        assert [r.ref for r in metrics.best_sellers(reordered)] == ["Z", "X", "Y"]

    def test_top_five(self):
        docs = [document(id="1", items=[item(ref=f"R{i}", quantity=i) for i in range(1, 8)])]
        assert [r.ref for r in metrics.best_sellers(docs)] == ["R7", "R6", "R5", "R4", "R3"]

    def test_grouping_is_order_independent(self):
        a = document(id="1", items=[item(ref="A", quantity=1), item(ref="B", quantity=5)])
        b = document(id="2", items=[item(ref="A", quantity=7)])
        assert metrics.best_sellers([a, b]) == metrics.best_sellers([b, a])


class TestRevenueReport:
    def test_profit_and_margin(self):
        products = [product(id="p1", purchase_price=6.0)]
        docs = [
            document(id="1", items=[item(product_id="p1", quantity=3, sale_price=10.0)]),
            # product deleted since: costed at its sale price
            document(id="2", items=[item(product_id="gone", ref="OLD", quantity=1, sale_price=20.0)]),
            document(id="3", status="Cancelled", items=[item(product_id="p1", quantity=9)]),
        ]
        report = metrics.revenue_report(docs, products)
        assert report.total_ht == pytest.approx(50.0)
        assert report.total_tva == pytest.approx(10.0)
        assert report.total_ttc == pytest.approx(60.0)
        assert report.total_cogs == pytest.approx(38.0)
        assert report.gross_profit == pytest.approx(12.0)
        assert report.gross_margin == pytest.approx(24.0)
        assert report.total_items_sold == 4
        assert report.invoice_count == 2

    def test_zero_revenue_has_zero_margin(self):
        docs = [document(id="1", items=[item(quantity=1, sale_price=0.0)])]
        assert metrics.revenue_report(docs, []).gross_margin == 0


class TestTopRankings:
    def test_top_sellers_by_revenue(self):
        docs = [document(id="1", items=[item(ref="A", quantity=10, sale_price=1.0),
                                        item(ref="B", quantity=1, sale_price=50.0)]),
                document(id="2", items=[item(ref="A", quantity=5, sale_price=1.0)])]
        rows = metrics.top_sellers_by_revenue(docs)
        assert [(r.ref, r.revenue, r.quantity) for r in rows] == [("B", 50.0, 1), ("A", 15.0, 15)]

    def test_top_customers_by_revenue(self):
        docs = [document(id="1", customer="Alami", items=[item(sale_price=100.0)]),
                document(id="2", customer="Bennani", items=[item(sale_price=300.0)]),
                document(id="3", customer="Alami", items=[item(sale_price=100.0)])]
        rows = metrics.top_customers_by_revenue(docs)
        assert [(r.name, r.invoices) for r in rows] == [("Bennani", 1), ("Alami", 2)]
        assert rows[0].revenue == pytest.approx(360.0)
        assert rows[1].revenue == pytest.approx(240.0)


def test_dashboard():
    products = [product(id="a", stock=3, sale_price=10), product(id="b", stock=50, sale_price=1)]
    docs = [document(id="1"), document(id="2", type="quote", status="Draft")]
    board = metrics.dashboard(products, [], docs)
    assert board.product_count == 2
    assert board.document_count == 2
    assert board.stock_value == pytest.approx(80.0)
    assert board.total_invoiced == pytest.approx(12.0)
    assert [p.id for p in board.low_stock] == ["a"]
    assert [r.ref for r in board.best_sellers] == ["REF-1"]
