from contextlib import asynccontextmanager
from typing import Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import metrics
from auth import SessionContext, approve_user, ensure_profile, record_login
from cart import Cart, CartLine, CartRegistry, CartState, CartTotals
from config import CORS_ORIGINS, ENABLE_CHANGE_STREAMS, MONGO_TRANSACTIONS, PORT
from database import db
from errors import ApprovalPending, InsufficientStock, NotFound, RemoteUnavailable, ValidationError
from formatters import amount_to_french_words, format_currency, format_date
from issuance import DocumentIssuer
from loggers import get_logger
from repository import Store
from schemas import (
    CompanyInfo,
    Customer,
    CustomerOut,
    DocumentType,
    Product,
    ProductOut,
    SalesDocumentOut,
    Settings,
)
from sync import ChangeStreamWatcher, SyncHub, SyncShell

logger = get_logger("commerce.api")


# -----------------------------
# Services
# -----------------------------

class Services:
    def __init__(self, store: Store):
        self.store = store
        self.hub = SyncHub(store)
        self.issuer = DocumentIssuer(store)
        self.carts = CartRegistry()
        self.sessions: Dict[str, SessionContext] = {}


_services: Optional[Services] = None


def configure(store: Store) -> Services:
    global _services
    if _services is not None:
        _services.hub.close()
    _services = Services(store)
    return _services


def get_services() -> Services:
    if _services is None:
        configure(Store(db, use_transactions=MONGO_TRANSACTIONS))
    return _services


def get_identity(
    x_user_id: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None),
    services: Services = Depends(get_services),
) -> SessionContext:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    cached = services.sessions.get(x_user_id)
    if cached is not None:
        record_login(services.store, x_user_id)
        return cached
    session = ensure_profile(services.store, x_user_id, x_user_email)
    if session.approved:
        services.store.seed_defaults(session.user_id)
        services.sessions[x_user_id] = session
    return session


def get_session(session: SessionContext = Depends(get_identity)) -> SessionContext:
    if not session.approved:
        raise ApprovalPending("Votre compte est en attente de validation par un administrateur.")
    return session


def get_shell(session: SessionContext = Depends(get_session),
              services: Services = Depends(get_services)) -> SyncShell:
    return services.hub.shell(session.user_id)


def get_cart(session: SessionContext = Depends(get_session), shell: SyncShell = Depends(get_shell),
             services: Services = Depends(get_services)) -> Cart:
    return services.carts.get(session.user_id, shell.product)


# -----------------------------
# API Schemas
# -----------------------------

class ProductView(ProductOut):
    margin: float


class BulkDeleteRequest(BaseModel):
    ids: List[str]


class DeletedOut(BaseModel):
    deleted: int


class CartAddRequest(BaseModel):
    product_id: str


class CartQuantityRequest(BaseModel):
    quantity: int


class CartOut(BaseModel):
    state: CartState
    lines: List[CartLine]
    totals: CartTotals


class CheckoutRequest(BaseModel):
    type: DocumentType
    customer_id: Optional[str] = None


class StatusUpdate(BaseModel):
    status: Literal["Cancelled"]


class PrintableDocument(BaseModel):
    document: SalesDocumentOut
    company_info: CompanyInfo
    tax_rate_percent: float
    date: str
    total_ht: str
    total_tva: str
    total_ttc: str
    amount_in_words: str


class AnnualReport(BaseModel):
    summary: metrics.RevenueReport
    top_sellers: List[metrics.ProductRevenue]
    top_customers: List[metrics.CustomerRevenue]


class MeOut(BaseModel):
    user_id: str
    email: Optional[str] = None
    approved: bool
    role: str


# -----------------------------
# FastAPI App
# -----------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    watcher = None
    if ENABLE_CHANGE_STREAMS and db is not None:
        watcher = ChangeStreamWatcher(db, get_services().hub)
        watcher.start()
        logger.info("Change stream watcher started")
    yield
    if watcher is not None:
        watcher.stop()


app = FastAPI(title="Gestion Commerciale API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ValidationError)
def validation_error_handler(request, exc: ValidationError):
    logger.warning("Rejected %s %s: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=400, content={"detail": exc.message})


@app.exception_handler(InsufficientStock)
def insufficient_stock_handler(request, exc: InsufficientStock):
    return JSONResponse(status_code=409, content={
        "detail": exc.message,
        "lines": [line.model_dump() for line in exc.lines],
    })


@app.exception_handler(NotFound)
def not_found_handler(request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": exc.message})


@app.exception_handler(ApprovalPending)
def approval_pending_handler(request, exc: ApprovalPending):
    return JSONResponse(status_code=403, content={"detail": exc.message})


@app.exception_handler(RemoteUnavailable)
def remote_unavailable_handler(request, exc: RemoteUnavailable):
    return JSONResponse(status_code=503, content={"detail": exc.message})


@app.get("/")
def root():
    return {"message": "Gestion Commerciale Backend Running", "driver": "mongodb"}


@app.get("/health")
def health(services: Services = Depends(get_services)):
    services.store.ping()
    return {"status": "ok"}


# -----------------------------
# Users
# -----------------------------
@app.get("/me", response_model=MeOut)
def me(session: SessionContext = Depends(get_identity)):
    return MeOut(user_id=session.user_id, email=session.email, approved=session.approved, role=session.role)


@app.post("/users/{uid}/approve")
def approve(uid: str, session: SessionContext = Depends(get_session), services: Services = Depends(get_services)):
    approve_user(services.store, session, uid)
    services.sessions.pop(uid, None)
    return {"message": "approved"}


# -----------------------------
# Products
# -----------------------------

def to_view(p: ProductOut) -> ProductView:
    return ProductView(**p.model_dump(), margin=metrics.product_margin(p.sale_price, p.purchase_price))


@app.get("/products", response_model=List[ProductView])
def list_products(
    q: Optional[str] = Query(None, description="Search by name or ref"),
    in_stock: bool = False,
    shell: SyncShell = Depends(get_shell),
):
    products = shell.products()
    if q:
        needle = q.lower()
        products = [p for p in products if needle in p.name.lower() or needle in p.ref.lower()]
    if in_stock:
        products = [p for p in products if p.stock > 0]
    return [to_view(p) for p in sorted(products, key=lambda p: p.name.lower())]


@app.get("/products/{product_id}", response_model=ProductView)
def get_product(product_id: str, session: SessionContext = Depends(get_session),
                services: Services = Depends(get_services)):
    p = services.store.get_product(session.user_id, product_id)
    if not p:
        raise HTTPException(status_code=404, detail="Product not found")
    return to_view(p)


@app.post("/products", response_model=ProductView)
def create_product(payload: Product, session: SessionContext = Depends(get_session),
                   services: Services = Depends(get_services)):
    return to_view(services.store.upsert_product(session.user_id, payload))


@app.put("/products/{product_id}", response_model=ProductView)
def update_product(product_id: str, payload: Product, session: SessionContext = Depends(get_session),
                   services: Services = Depends(get_services)):
    return to_view(services.store.upsert_product(session.user_id, payload, product_id))


@app.delete("/products/{product_id}")
def delete_product(product_id: str, session: SessionContext = Depends(get_session),
                   services: Services = Depends(get_services)):
    services.store.delete_product(session.user_id, product_id)
    return {"message": "deleted"}


@app.post("/products/bulk-delete", response_model=DeletedOut)
def delete_products(payload: BulkDeleteRequest, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    return DeletedOut(deleted=services.store.delete_products(session.user_id, payload.ids))


@app.delete("/products", response_model=DeletedOut)
def clear_stock(confirm: bool = False, session: SessionContext = Depends(get_session),
                services: Services = Depends(get_services)):
    if not confirm:
        raise ValidationError("La suppression de tout le stock doit être confirmée.")
    deleted = services.store.clear_stock(session.user_id)
    logger.info("Cleared stock of %s (%d products)", session.user_id, deleted)
    return DeletedOut(deleted=deleted)


# -----------------------------
# Customers
# -----------------------------
@app.get("/customers", response_model=List[CustomerOut])
def list_customers(q: Optional[str] = None, shell: SyncShell = Depends(get_shell)):
    customers = shell.customers()
    if q:
        needle = q.lower()
        customers = [c for c in customers
                     if needle in c.name.lower() or needle in c.email.lower() or (c.ice and q in c.ice)]
    return sorted(customers, key=lambda c: c.name.lower())


@app.post("/customers", response_model=CustomerOut)
def create_customer(payload: Customer, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    return services.store.upsert_customer(session.user_id, payload)


@app.put("/customers/{customer_id}", response_model=CustomerOut)
def update_customer(customer_id: str, payload: Customer, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    return services.store.upsert_customer(session.user_id, payload, customer_id)


@app.delete("/customers/{customer_id}")
def delete_customer(customer_id: str, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    services.store.delete_customer(session.user_id, customer_id)
    return {"message": "deleted"}


# -----------------------------
# Settings
# -----------------------------
@app.get("/settings", response_model=Settings)
def get_settings(shell: SyncShell = Depends(get_shell)):
    return shell.settings()


@app.put("/settings", response_model=Settings)
def update_settings(payload: Settings, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    return services.store.upsert_settings(session.user_id, payload)


# -----------------------------
# POS Cart & Checkout
# -----------------------------

def cart_out(cart: Cart, shell: SyncShell) -> CartOut:
    return CartOut(state=cart.state, lines=cart.lines, totals=cart.totals(shell.settings().tax_rate))


@app.get("/pos/cart", response_model=CartOut)
def view_cart(cart: Cart = Depends(get_cart), shell: SyncShell = Depends(get_shell)):
    return cart_out(cart, shell)


@app.post("/pos/cart/items", response_model=CartOut)
def add_to_cart(payload: CartAddRequest, cart: Cart = Depends(get_cart), shell: SyncShell = Depends(get_shell)):
    product = shell.product(payload.product_id)
    if product is not None:
        if product.stock <= 0 and cart.quantity_of(product.id) == 0:
            raise ValidationError(f"{product.name} est en rupture de stock.")
        cart.add(product)
    return cart_out(cart, shell)


@app.put("/pos/cart/items/{product_id}", response_model=CartOut)
def set_cart_quantity(product_id: str, payload: CartQuantityRequest, cart: Cart = Depends(get_cart),
                      shell: SyncShell = Depends(get_shell)):
    cart.set_quantity(product_id, payload.quantity)
    return cart_out(cart, shell)


@app.delete("/pos/cart", response_model=CartOut)
def clear_cart(confirm: bool = False, cart: Cart = Depends(get_cart), shell: SyncShell = Depends(get_shell)):
    cart.clear(confirm=confirm)
    return cart_out(cart, shell)


@app.post("/pos/cart/checkout", response_model=SalesDocumentOut)
def checkout(payload: CheckoutRequest, session: SessionContext = Depends(get_session),
             cart: Cart = Depends(get_cart), shell: SyncShell = Depends(get_shell),
             services: Services = Depends(get_services)):
    customer = shell.customer(payload.customer_id) if payload.customer_id else None
    return services.issuer.issue(session, cart, customer, payload.type, shell.settings().tax_rate)


# -----------------------------
# Documents
# -----------------------------

def load_document(services: Services, session: SessionContext, document_id: str) -> SalesDocumentOut:
    doc = services.store.get_document(session.user_id, document_id)
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


@app.get("/documents", response_model=List[SalesDocumentOut])
def list_documents(type: Optional[DocumentType] = None, shell: SyncShell = Depends(get_shell)):
    docs = [d for d in shell.documents() if type is None or d.type == type]
    return sorted(docs, key=lambda d: d.date, reverse=True)


@app.get("/documents/{document_id}", response_model=SalesDocumentOut)
def get_document(document_id: str, session: SessionContext = Depends(get_session),
                 services: Services = Depends(get_services)):
    return load_document(services, session, document_id)


@app.get("/documents/{document_id}/printable", response_model=PrintableDocument)
def printable_document(document_id: str, session: SessionContext = Depends(get_session),
                       services: Services = Depends(get_services), shell: SyncShell = Depends(get_shell)):
    doc = load_document(services, session, document_id)
    settings = shell.settings()
    return PrintableDocument(
        document=doc,
        company_info=settings.company_info,
        tax_rate_percent=round(settings.tax_rate * 100, 2),
        date=format_date(doc.date),
        total_ht=format_currency(doc.total_ht),
        total_tva=format_currency(doc.total_tva),
        total_ttc=format_currency(doc.total_ttc),
        amount_in_words=amount_to_french_words(doc.total_ttc),
    )


@app.post("/documents/{document_id}/convert", response_model=SalesDocumentOut)
def convert_document(document_id: str, session: SessionContext = Depends(get_session),
                     services: Services = Depends(get_services)):
    quote = load_document(services, session, document_id)
    return services.issuer.convert_quote_to_invoice(session, quote)


@app.patch("/documents/{document_id}/status", response_model=SalesDocumentOut)
def update_document_status(document_id: str, payload: StatusUpdate, session: SessionContext = Depends(get_session),
                           services: Services = Depends(get_services)):
    doc = load_document(services, session, document_id)
    services.issuer.update_status(session, doc, payload.status)
    return load_document(services, session, document_id)


@app.delete("/documents/{document_id}")
def delete_document(document_id: str, session: SessionContext = Depends(get_session),
                    services: Services = Depends(get_services)):
    services.store.delete_document(session.user_id, document_id)
    return {"message": "deleted"}


# -----------------------------
# Reports
# -----------------------------
@app.get("/reports/dashboard", response_model=metrics.Dashboard)
def dashboard(shell: SyncShell = Depends(get_shell)):
    return metrics.dashboard(shell.products(), shell.customers(), shell.documents())


@app.get("/reports/annual", response_model=AnnualReport)
def annual_report(shell: SyncShell = Depends(get_shell)):
    documents = shell.documents()
    return AnnualReport(
        summary=metrics.revenue_report(documents, shell.products()),
        top_sellers=metrics.top_sellers_by_revenue(documents),
        top_customers=metrics.top_customers_by_revenue(documents),
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
