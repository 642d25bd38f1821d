"""
Error taxonomy of the commercial workflow.

These are raised by the cart, the issuance workflow and the repository, and
translated into HTTP responses by the exception handlers in main.py.
"""
from typing import List

from pydantic import BaseModel


class CommerceError(Exception):
    """Base class for errors reported to the user."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CommerceError):
    """Precondition failed: empty cart, no customer, not authenticated, ..."""


class StockShortage(BaseModel):
    product_id: str
    name: str
    requested: int
    available: int

    def describe(self) -> str:
        return f"{self.name} (demandé: {self.requested}, dispo: {self.available})"


class InsufficientStock(CommerceError):
    def __init__(self, lines: List[StockShortage]):
        self.lines = list(lines)
        super().__init__("Stock insuffisant pour: " + ", ".join(line.describe() for line in self.lines))


class RemoteUnavailable(CommerceError):
    """The document store could not be reached or rejected the operation."""


class NotFound(CommerceError):
    pass


class ApprovalPending(CommerceError):
    pass
