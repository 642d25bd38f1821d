"""
Database Schemas for the commercial management backend (MongoDB)

Each Pydantic model represents a collection in MongoDB. Collection name is the
lowercase of the class name by convention (SalesDocument -> "document").
Every stored record also carries an `owner_id`: the data partition of one
authenticated user. The `...Out` models are the read models with their id.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

DocumentType = Literal["quote", "delivery_note", "invoice"]
DocumentStatus = Literal["Draft", "Converted", "Paid", "Cancelled", "Delivered"]


def _parse_decimal(value):
    # Forms send "12,5" as often as "12.5"
    if isinstance(value, str):
        value = value.strip().replace(",", ".")
        return float(value) if value else 0.0
    return value


# Master Data
class Product(BaseModel):
    ref: str = ""
    name: str
    description: str = ""
    purchase_price: float = 0.0
    sale_price: float = 0.0
    stock: int = 0

    @field_validator("purchase_price", "sale_price", mode="before")
    @classmethod
    def _prices(cls, v):
        return _parse_decimal(v)

    @field_validator("stock", mode="before")
    @classmethod
    def _stock(cls, v):
        if isinstance(v, str):
            v = _parse_decimal(v)
        if isinstance(v, float):
            return int(v)
        return v


class ProductOut(Product):
    id: str


class Customer(BaseModel):
    name: str = Field(..., min_length=1)
    email: str = ""
    phone: str = ""
    address: str = ""
    ice: Optional[str] = ""


class CustomerOut(Customer):
    id: str


# Sales documents
class CustomerSnapshot(Customer):
    """Customer fields copied into a document at issuance time."""
    id: str


class DocumentItem(BaseModel):
    product_id: str
    ref: str
    name: str
    quantity: int = Field(..., ge=1)
    sale_price: float


class SalesDocument(BaseModel):
    type: DocumentType
    reference: str
    date: datetime
    customer: CustomerSnapshot
    items: List[DocumentItem]
    total_ht: float
    total_tva: float
    total_ttc: float
    status: DocumentStatus
    quote_ref: Optional[str] = None


class SalesDocumentOut(SalesDocument):
    id: str


# Settings
class CompanyInfo(BaseModel):
    name: str = ""
    address: str = ""
    email: str = ""
    phone: str = ""
    website: Optional[str] = ""
    logo_url: str = ""
    ice: Optional[str] = ""
    rc: Optional[str] = ""
    if_fiscal: Optional[str] = ""
    cnss: Optional[str] = ""
    patente: Optional[str] = ""
    rib: Optional[str] = ""
    legal: str = ""


class Settings(BaseModel):
    company_info: CompanyInfo = Field(default_factory=CompanyInfo)
    tax_rate: float = Field(0.20, ge=0, le=1, description="Tax rate as a fraction, e.g. 0.20 for 20%")

    @field_validator("tax_rate", mode="before")
    @classmethod
    def _rate(cls, v):
        return _parse_decimal(v)


# Users
class UserProfile(BaseModel):
    uid: str
    email: Optional[str] = None
    is_approved: bool = False
    role: Literal["admin", "user"] = "user"
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
