"""
Document issuance: turning a cart, or a Draft quote, into a stored sales
document while keeping product stock consistent.

Stock is checked against the store right before the write, then the document
and the stock decrements are committed together. The check itself is not part
of the transaction: two sessions that pass the check at the same time can
both commit and drive stock below zero. Deleting a document never restores
stock.
"""
import threading
import time
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from auth import SessionContext
from cart import Cart
from constants import (
    CANCELLED,
    CONVERTED,
    DRAFT,
    FINAL_STATUSES,
    INVOICE,
    PAID,
    QUOTE,
    STATUS_FOR_TYPE,
    STOCK_CONSUMING_TYPES,
)
from errors import InsufficientStock, StockShortage, ValidationError
from loggers import get_logger
from repository import StockDecrement, Store
from schemas import CustomerOut, CustomerSnapshot, DocumentItem, SalesDocument, SalesDocumentOut

logger = get_logger("commerce.issuance")

_stamp_lock = threading.Lock()
_last_stamp = 0


def next_reference(doc_type: str) -> str:
    """`{TYPE}-{epoch ms}`, strictly increasing within this process."""
    global _last_stamp
    with _stamp_lock:
        stamp = max(int(time.time() * 1000), _last_stamp + 1)
        _last_stamp = stamp
    return f"{doc_type.upper()}-{stamp}"


def snapshot_customer(customer: CustomerOut) -> CustomerSnapshot:
    return CustomerSnapshot(
        id=customer.id,
        name=customer.name,
        email=customer.email,
        phone=customer.phone,
        address=customer.address,
        ice=customer.ice or "",
    )


class DocumentIssuer:
    def __init__(self, store: Store):
        self.store = store

    def check_stock(self, session: SessionContext, items: Iterable[DocumentItem]) -> None:
        """Raise InsufficientStock naming every line the store cannot cover."""
        items = list(items)
        available = self.store.current_stock(session.user_id, [i.product_id for i in items])
        shortages: List[StockShortage] = []
        for item in items:
            stock = available.get(item.product_id, 0)
            if stock < item.quantity:
                shortages.append(StockShortage(
                    product_id=item.product_id, name=item.name, requested=item.quantity, available=stock))
        if shortages:
            logger.warning("Stock check failed for %s: %s", session.user_id,
                           ", ".join(s.describe() for s in shortages))
            raise InsufficientStock(shortages)

    def issue(self, session: Optional[SessionContext], cart: Cart, customer: Optional[CustomerOut],
              doc_type: str, tax_rate: float) -> SalesDocumentOut:
        if cart.is_empty():
            raise ValidationError("Votre panier est vide.")
        if customer is None:
            raise ValidationError("Veuillez sélectionner un client.")
        if session is None or not session.user_id:
            raise ValidationError("Utilisateur non authentifié.")
        if doc_type not in STATUS_FOR_TYPE:
            raise ValidationError(f"Type de document inconnu: {doc_type}")
        if not cart.begin_issue():
            raise ValidationError("Un document est déjà en cours de création.")

        try:
            items = cart.items()
            if not items:
                # emptied by the checkout that held the cart before us
                raise ValidationError("Votre panier est vide.")
            totals = cart.totals(tax_rate)
            document = SalesDocument(
                type=doc_type,
                reference=next_reference(doc_type),
                date=datetime.now(timezone.utc),
                customer=snapshot_customer(customer),
                items=items,
                total_ht=totals.subtotal,
                total_tva=totals.tax,
                total_ttc=totals.total,
                status=STATUS_FOR_TYPE[doc_type],
            )

            decrements = []
            if doc_type in STOCK_CONSUMING_TYPES:
                self.check_stock(session, items)
                decrements = [StockDecrement(i.product_id, i.quantity) for i in items]

            created = self.store.commit(session.user_id, document, decrements)
            cart.clear(confirm=True)
        finally:
            cart.end_issue()

        logger.info("Issued %s %s for %s (%d lines, total %.2f)", doc_type, created.reference,
                    customer.name, len(items), created.total_ttc)
        return created

    def convert_quote_to_invoice(self, session: Optional[SessionContext],
                                 quote: SalesDocumentOut) -> SalesDocumentOut:
        if session is None or not session.user_id:
            raise ValidationError("Utilisateur non authentifié.")
        if quote.type != QUOTE:
            raise ValidationError("Seul un devis peut être converti en facture.")
        if quote.status != DRAFT:
            raise ValidationError(f"Le devis {quote.reference} n'est plus un brouillon ({quote.status}).")

        self.check_stock(session, quote.items)

        invoice = SalesDocument(
            **quote.model_dump(exclude={"id", "type", "reference", "date", "status", "quote_ref"}),
            type=INVOICE,
            reference=next_reference(INVOICE),
            date=datetime.now(timezone.utc),
            status=PAID,
            quote_ref=quote.reference,
        )
        created = self.store.commit(
            session.user_id,
            invoice,
            [StockDecrement(i.product_id, i.quantity) for i in quote.items],
            status_updates={quote.id: CONVERTED},
        )
        logger.info("Converted quote %s into invoice %s", quote.reference, created.reference)
        return created

    def update_status(self, session: SessionContext, document: SalesDocumentOut, status: str) -> None:
        """Manual edits may only cancel a document that is not already final."""
        if status != CANCELLED:
            raise ValidationError(f"Changement de statut non autorisé: {status}")
        if document.status in FINAL_STATUSES:
            raise ValidationError(f"Le document {document.reference} est déjà {document.status}.")
        self.store.update_document_status(session.user_id, document.id, status)
        logger.info("Document %s marked %s", document.reference, status)
