"""
Derived metrics over the read-model collections.

Everything here is recomputed from the full collections on demand; nothing is
persisted. Rankings rely on `sorted` being stable and on dicts keeping
insertion order, so equal totals keep the order in which their key first
appeared in the input.
"""
from typing import Dict, Iterable, List, Sequence

from pydantic import BaseModel

from constants import CANCELLED, INVOICE, LOW_STOCK_THRESHOLD, TOP_N
from schemas import CustomerOut, DocumentItem, ProductOut, SalesDocumentOut


class ProductQuantity(BaseModel):
    ref: str
    name: str
    quantity: int


class ProductRevenue(BaseModel):
    ref: str
    name: str
    revenue: float
    quantity: int


class CustomerRevenue(BaseModel):
    name: str
    revenue: float
    invoices: int


class RevenueReport(BaseModel):
    total_ttc: float = 0.0
    total_ht: float = 0.0
    total_tva: float = 0.0
    total_cogs: float = 0.0
    gross_profit: float = 0.0
    gross_margin: float = 0.0
    total_items_sold: int = 0
    invoice_count: int = 0


class Dashboard(BaseModel):
    product_count: int
    customer_count: int
    document_count: int
    stock_value: float
    total_invoiced: float
    low_stock: List[ProductOut]
    best_sellers: List[ProductQuantity]


def product_margin(sale_price: float, purchase_price: float) -> float:
    """Margin as a percentage of the sale price; 0 when there is no sale price."""
    if sale_price <= 0:
        return 0.0
    return (sale_price - purchase_price) / sale_price * 100


def stock_value(products: Iterable[ProductOut]) -> float:
    return sum(p.sale_price * p.stock for p in products)


def low_stock(products: Iterable[ProductOut], threshold: int = LOW_STOCK_THRESHOLD) -> List[ProductOut]:
    return sorted((p for p in products if p.stock <= threshold), key=lambda p: p.stock)


def active_invoices(documents: Iterable[SalesDocumentOut]) -> List[SalesDocumentOut]:
    return [d for d in documents if d.type == INVOICE and d.status != CANCELLED]


def sold_items(documents: Iterable[SalesDocumentOut]) -> List[DocumentItem]:
    return [item for d in active_invoices(documents) for item in d.items]


def total_invoiced(documents: Iterable[SalesDocumentOut]) -> float:
    return sum(d.total_ttc for d in active_invoices(documents))


def best_sellers(documents: Iterable[SalesDocumentOut], limit: int = TOP_N) -> List[ProductQuantity]:
    aggregated: Dict[str, ProductQuantity] = {}
    for item in sold_items(documents):
        if item.ref not in aggregated:
            aggregated[item.ref] = ProductQuantity(ref=item.ref, name=item.name, quantity=0)
        aggregated[item.ref].quantity += item.quantity
    return sorted(aggregated.values(), key=lambda row: row.quantity, reverse=True)[:limit]


def top_sellers_by_revenue(documents: Iterable[SalesDocumentOut], limit: int = TOP_N) -> List[ProductRevenue]:
    aggregated: Dict[str, ProductRevenue] = {}
    for item in sold_items(documents):
        if item.ref not in aggregated:
            aggregated[item.ref] = ProductRevenue(ref=item.ref, name=item.name, revenue=0.0, quantity=0)
        aggregated[item.ref].revenue += item.sale_price * item.quantity
        aggregated[item.ref].quantity += item.quantity
    return sorted(aggregated.values(), key=lambda row: row.revenue, reverse=True)[:limit]


def top_customers_by_revenue(documents: Iterable[SalesDocumentOut], limit: int = TOP_N) -> List[CustomerRevenue]:
    aggregated: Dict[str, CustomerRevenue] = {}
    for doc in active_invoices(documents):
        name = doc.customer.name
        if name not in aggregated:
            aggregated[name] = CustomerRevenue(name=name, revenue=0.0, invoices=0)
        aggregated[name].revenue += doc.total_ttc
        aggregated[name].invoices += 1
    return sorted(aggregated.values(), key=lambda row: row.revenue, reverse=True)[:limit]


def revenue_report(documents: Iterable[SalesDocumentOut], products: Sequence[ProductOut]) -> RevenueReport:
    """
    Totals over non-cancelled invoices.

    Cost of goods sold uses the current purchase price of each product; lines
    whose product was deleted since are costed at their own sale price.
    """
    invoices = active_invoices(documents)
    items = [item for d in invoices for item in d.items]
    by_id = {p.id: p for p in products}

    total_ht = sum(d.total_ht for d in invoices)
    cogs = 0.0
    for item in items:
        product = by_id.get(item.product_id)
        cost = product.purchase_price if product is not None else item.sale_price
        cogs += cost * item.quantity

    gross_profit = total_ht - cogs
    return RevenueReport(
        total_ttc=sum(d.total_ttc for d in invoices),
        total_ht=total_ht,
        total_tva=sum(d.total_tva for d in invoices),
        total_cogs=cogs,
        gross_profit=gross_profit,
        gross_margin=(gross_profit / total_ht * 100) if total_ht > 0 else 0.0,
        total_items_sold=sum(item.quantity for item in items),
        invoice_count=len(invoices),
    )


def dashboard(products: Sequence[ProductOut], customers: Sequence[CustomerOut],
              documents: Sequence[SalesDocumentOut]) -> Dashboard:
    return Dashboard(
        product_count=len(products),
        customer_count=len(customers),
        document_count=len(documents),
        stock_value=stock_value(products),
        total_invoiced=total_invoiced(documents),
        low_stock=low_stock(products),
        best_sellers=best_sellers(documents),
    )
