"""
Point-of-sale cart.

A cart collects product snapshots with quantities bounded by the stock known
from the read model. It only lives for the POS session of one user; the
registry below keeps one per user id.
"""
import threading
from enum import Enum
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel

from errors import ValidationError
from schemas import DocumentItem, ProductOut

ProductLookup = Callable[[str], Optional[ProductOut]]


class CartState(str, Enum):
    EMPTY = "empty"
    BUILDING = "building"
    ISSUING = "issuing"


class CartLine(BaseModel):
    product_id: str
    ref: str
    name: str
    sale_price: float
    quantity: int

    def to_item(self) -> DocumentItem:
        return DocumentItem(
            product_id=self.product_id,
            ref=self.ref,
            name=self.name,
            quantity=self.quantity,
            sale_price=self.sale_price,
        )


class CartTotals(BaseModel):
    subtotal: float
    tax: float
    total: float


class Cart:
    def __init__(self, lookup: ProductLookup):
        self.lookup = lookup
        self._lines: Dict[str, CartLine] = {}
        self.issuing = False
        self._issue_lock = threading.Lock()

    @property
    def state(self) -> CartState:
        if self.issuing:
            return CartState.ISSUING
        return CartState.BUILDING if self._lines else CartState.EMPTY

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def quantity_of(self, product_id: str) -> int:
        line = self._lines.get(product_id)
        return line.quantity if line else 0

    def add(self, product: ProductOut) -> None:
        """Add one unit; silently capped at the product's stock."""
        line = self._lines.get(product.id)
        if line is not None:
            if line.quantity < product.stock:
                line.quantity += 1
            return
        self._lines[product.id] = CartLine(
            product_id=product.id,
            ref=product.ref,
            name=product.name,
            sale_price=product.sale_price,
            quantity=1,
        )

    def set_quantity(self, product_id: str, value: int) -> None:
        product = self.lookup(product_id)
        if product is None:
            return
        if value <= 0:
            self._lines.pop(product_id, None)
            return
        line = self._lines.get(product_id)
        if line is None:
            return
        quantity = min(value, product.stock)
        if quantity <= 0:
            # sold out since the line was added
            self._lines.pop(product_id, None)
            return
        line.quantity = quantity

    def begin_issue(self) -> bool:
        """Mark the cart as issuing. False if another issuance already holds it."""
        with self._issue_lock:
            if self.issuing:
                return False
            self.issuing = True
            return True

    def end_issue(self) -> None:
        with self._issue_lock:
            self.issuing = False

    def remove(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear(self, confirm: bool = False) -> None:
        if not confirm:
            raise ValidationError("clearing the cart requires confirmation")
        self._lines.clear()

    def totals(self, tax_rate: float) -> CartTotals:
        subtotal = sum(line.sale_price * line.quantity for line in self._lines.values())
        tax = subtotal * tax_rate
        return CartTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)

    def items(self) -> List[DocumentItem]:
        return [line.to_item() for line in self._lines.values()]


class CartRegistry:
    """One cart per user for the lifetime of the process."""

    def __init__(self):
        self._carts: Dict[str, Cart] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, lookup: ProductLookup) -> Cart:
        with self._lock:
            cart = self._carts.get(user_id)
            if cart is None:
                cart = Cart(lookup)
                self._carts[user_id] = cart
            else:
                # the lookup closes over the user's current read model
                cart.lookup = lookup
            return cart
