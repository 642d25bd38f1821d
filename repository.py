"""
Owner-scoped access to the MongoDB collections.

Every record carries an `owner_id`; every query filters on it. Writes that
must land together (a new document plus its stock decrements, a conversion,
a bulk delete, first-run seeding) run in a single multi-document
transaction. Successful writes notify the registered change listeners with
the owner id and the touched collections.
"""
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from constants import (
    CUSTOMERS,
    DEFAULT_SETTINGS,
    DOCUMENTS,
    PRODUCTS,
    SETTINGS,
    USERS,
    WALK_IN_CUSTOMER,
    WALK_IN_CUSTOMER_NAME,
)
from database import create_document, get_documents
from errors import NotFound, RemoteUnavailable, ValidationError
from loggers import get_logger
from schemas import (
    Customer,
    CustomerOut,
    Product,
    ProductOut,
    SalesDocument,
    SalesDocumentOut,
    Settings,
    UserProfile,
)

logger = get_logger("commerce.repository")

ChangeListener = Callable[[str, Iterable[str]], None]


# -----------------------------
# Utilities
# -----------------------------

def oid(obj: Optional[str]) -> Optional[ObjectId]:
    if obj is None:
        return None
    try:
        return ObjectId(obj)
    except Exception:
        return None


def to_str_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    d.pop("owner_id", None)
    for k, v in list(d.items()):
        if isinstance(v, ObjectId):
            d[k] = str(v)
    return d


def generate_product_ref() -> str:
    stamp = str(int(time.time() * 1000))[-6:]
    return f"PRD-{stamp}{random.randint(0, 999):03d}"


def _opts(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class StockDecrement:
    __slots__ = ("product_id", "amount")

    def __init__(self, product_id: str, amount: int):
        self.product_id = product_id
        self.amount = amount


class Store:
    """
    Collections of one MongoDB database. `use_transactions` must be False on
    standalone servers, which cannot run multi-document transactions; the
    writes of a commit are then applied one after the other.
    """

    def __init__(self, database, use_transactions: bool = True):
        if database is None:
            raise RemoteUnavailable("Database not configured")
        self.db = database
        self.use_transactions = use_transactions
        self._listeners: List[ChangeListener] = []

    # -- change notification -------------------------------------------------

    def add_change_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def _changed(self, owner_id: str, *collections: str) -> None:
        for listener in list(self._listeners):
            listener(owner_id, collections)

    # -- plumbing ------------------------------------------------------------

    def _call(self, fn: Callable[[], Any]):
        try:
            return fn()
        except PyMongoError as e:
            logger.error("Database operation failed: %s", e)
            raise RemoteUnavailable("Le serveur de données est indisponible, veuillez réessayer.") from e

    def _atomic(self, txn: Callable[[Any], Any]):
        """Run txn(session) in one transaction, or with session=None when transactions are off."""
        if not self.use_transactions:
            return self._call(lambda: txn(None))

        def run():
            with self.db.client.start_session() as session:
                return session.with_transaction(txn)

        return self._call(run)

    def ping(self) -> None:
        self._call(lambda: self.db.command("ping"))

    def _find(self, collection: str, owner_id: str, extra: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filt = {"owner_id": owner_id, **(extra or {})}
        return self._call(lambda: get_documents(collection, filt, database=self.db))

    def _get(self, collection: str, owner_id: str, item_id: str) -> Optional[Dict[str, Any]]:
        _id = oid(item_id)
        if not _id:
            return None
        return self._call(lambda: self.db[collection].find_one({"_id": _id, "owner_id": owner_id}))

    def _delete(self, collection: str, owner_id: str, item_id: str) -> None:
        _id = oid(item_id)
        if not _id:
            raise NotFound(f"{collection} {item_id} not found")
        res = self._call(lambda: self.db[collection].delete_one({"_id": _id, "owner_id": owner_id}))
        if res.deleted_count == 0:
            raise NotFound(f"{collection} {item_id} not found")
        self._changed(owner_id, collection)

    def _upsert(self, collection: str, owner_id: str, item_id: Optional[str], data: Dict[str, Any]) -> str:
        if item_id is None:
            new_id = self._call(lambda: create_document(collection, {**data, "owner_id": owner_id},
                                                         database=self.db))
            self._changed(owner_id, collection)
            return new_id
        _id = oid(item_id)
        if not _id:
            raise NotFound(f"{collection} {item_id} not found")
        updates = {**data, "updated_at": datetime.now(timezone.utc)}
        upd = self._call(lambda: self.db[collection].find_one_and_update(
            {"_id": _id, "owner_id": owner_id}, {"$set": updates}, return_document=ReturnDocument.AFTER))
        if not upd:
            raise NotFound(f"{collection} {item_id} not found")
        self._changed(owner_id, collection)
        return item_id

    # -- products ------------------------------------------------------------

    def list_products(self, owner_id: str) -> List[ProductOut]:
        return [ProductOut(**to_str_id(d)) for d in self._find(PRODUCTS, owner_id)]

    def get_product(self, owner_id: str, product_id: str) -> Optional[ProductOut]:
        d = self._get(PRODUCTS, owner_id, product_id)
        return ProductOut(**to_str_id(d)) if d else None

    def current_stock(self, owner_id: str, product_ids: Iterable[str]) -> Dict[str, int]:
        """Authoritative stock for the given ids; missing products are absent from the result."""
        ids = [i for i in (oid(p) for p in product_ids) if i]
        docs = self._find(PRODUCTS, owner_id, {"_id": {"$in": ids}})
        return {str(d["_id"]): int(d.get("stock", 0)) for d in docs}

    def has_products(self, owner_id: str) -> bool:
        return self._call(lambda: self.db[PRODUCTS].find_one({"owner_id": owner_id}) is not None)

    def upsert_product(self, owner_id: str, product: Product, product_id: Optional[str] = None) -> ProductOut:
        data = product.model_dump()
        if not data["ref"]:
            if product_id is None:
                data["ref"] = generate_product_ref()
            else:
                data.pop("ref")
        saved_id = self._upsert(PRODUCTS, owner_id, product_id, data)
        return self.get_product(owner_id, saved_id)

    def delete_product(self, owner_id: str, product_id: str) -> None:
        self._delete(PRODUCTS, owner_id, product_id)

    def delete_products(self, owner_id: str, product_ids: Iterable[str]) -> int:
        ids = [i for i in (oid(p) for p in product_ids) if i]
        if not ids:
            return 0

        def txn(session):
            return self.db[PRODUCTS].delete_many({"_id": {"$in": ids}, "owner_id": owner_id}, **_opts(session))

        res = self._atomic(txn)
        self._changed(owner_id, PRODUCTS)
        return res.deleted_count

    def clear_stock(self, owner_id: str) -> int:
        """Delete every product of the owner."""
        res = self._call(lambda: self.db[PRODUCTS].delete_many({"owner_id": owner_id}))
        if res.deleted_count:
            self._changed(owner_id, PRODUCTS)
        return res.deleted_count

    # -- customers -----------------------------------------------------------

    def list_customers(self, owner_id: str) -> List[CustomerOut]:
        return [CustomerOut(**to_str_id(d)) for d in self._find(CUSTOMERS, owner_id)]

    def get_customer(self, owner_id: str, customer_id: str) -> Optional[CustomerOut]:
        d = self._get(CUSTOMERS, owner_id, customer_id)
        return CustomerOut(**to_str_id(d)) if d else None

    def upsert_customer(self, owner_id: str, customer: Customer, customer_id: Optional[str] = None) -> CustomerOut:
        saved_id = self._upsert(CUSTOMERS, owner_id, customer_id, customer.model_dump())
        return self.get_customer(owner_id, saved_id)

    def delete_customer(self, owner_id: str, customer_id: str) -> None:
        customer = self.get_customer(owner_id, customer_id)
        if customer is None:
            raise NotFound(f"customer {customer_id} not found")
        if customer.name == WALK_IN_CUSTOMER_NAME:
            raise ValidationError(f'Vous ne pouvez pas supprimer le "{WALK_IN_CUSTOMER_NAME}" par défaut.')
        self._delete(CUSTOMERS, owner_id, customer_id)

    # -- settings ------------------------------------------------------------

    def get_settings(self, owner_id: str) -> Optional[Settings]:
        d = self._call(lambda: self.db[SETTINGS].find_one({"owner_id": owner_id}))
        if not d:
            return None
        d = to_str_id(d)
        return Settings(**{k: v for k, v in d.items() if k in Settings.model_fields})

    def upsert_settings(self, owner_id: str, settings: Settings) -> Settings:
        data = {**settings.model_dump(), "owner_id": owner_id, "updated_at": datetime.now(timezone.utc)}
        self._call(lambda: self.db[SETTINGS].replace_one({"owner_id": owner_id}, data, upsert=True))
        self._changed(owner_id, SETTINGS)
        return settings

    def seed_defaults(self, owner_id: str) -> bool:
        """Write default settings and the walk-in customer on first use. Returns True if seeded."""
        if self.get_settings(owner_id) is not None:
            return False
        now = datetime.now(timezone.utc)

        def txn(session):
            self.db[SETTINGS].insert_one(
                {**DEFAULT_SETTINGS.model_dump(), "owner_id": owner_id, "created_at": now, "updated_at": now},
                **_opts(session))
            self.db[CUSTOMERS].insert_one(
                {**WALK_IN_CUSTOMER.model_dump(), "owner_id": owner_id, "created_at": now, "updated_at": now},
                **_opts(session))

        self._atomic(txn)
        logger.info("Seeded default settings and walk-in customer for %s", owner_id)
        self._changed(owner_id, SETTINGS, CUSTOMERS)
        return True

    # -- documents -----------------------------------------------------------

    def list_documents(self, owner_id: str) -> List[SalesDocumentOut]:
        return [SalesDocumentOut(**to_str_id(d)) for d in self._find(DOCUMENTS, owner_id)]

    def get_document(self, owner_id: str, document_id: str) -> Optional[SalesDocumentOut]:
        d = self._get(DOCUMENTS, owner_id, document_id)
        return SalesDocumentOut(**to_str_id(d)) if d else None

    def commit(self, owner_id: str, new_document: SalesDocument, decrements: Iterable[StockDecrement] = (),
               status_updates: Optional[Dict[str, str]] = None) -> SalesDocumentOut:
        """
        Insert `new_document`, apply `status_updates` (document id -> status)
        and decrement stock, all or nothing. Stock is not checked here.
        """
        decrements = list(decrements)
        status_updates = status_updates or {}
        doc = {**new_document.model_dump(), "owner_id": owner_id}

        def txn(session):
            res = self.db[DOCUMENTS].insert_one(doc, **_opts(session))
            for document_id, status in status_updates.items():
                self.db[DOCUMENTS].update_one({"_id": oid(document_id), "owner_id": owner_id},
                                              {"$set": {"status": status}}, **_opts(session))
            for dec in decrements:
                self.db[PRODUCTS].update_one({"_id": oid(dec.product_id), "owner_id": owner_id},
                                             {"$inc": {"stock": -dec.amount}}, **_opts(session))
            return res.inserted_id

        inserted_id = self._atomic(txn)
        touched = (DOCUMENTS, PRODUCTS) if decrements else (DOCUMENTS,)
        self._changed(owner_id, *touched)
        return SalesDocumentOut(**new_document.model_dump(), id=str(inserted_id))

    def decrement_stock(self, owner_id: str, product_id: str, amount: int) -> None:
        _id = oid(product_id)
        res = self._call(lambda: self.db[PRODUCTS].update_one({"_id": _id, "owner_id": owner_id},
                                                               {"$inc": {"stock": -amount}}))
        if res.matched_count == 0:
            raise NotFound(f"product {product_id} not found")
        self._changed(owner_id, PRODUCTS)

    def update_document_status(self, owner_id: str, document_id: str, status: str) -> None:
        _id = oid(document_id)
        res = self._call(lambda: self.db[DOCUMENTS].update_one({"_id": _id, "owner_id": owner_id},
                                                                {"$set": {"status": status}}))
        if res.matched_count == 0:
            raise NotFound(f"document {document_id} not found")
        self._changed(owner_id, DOCUMENTS)

    def delete_document(self, owner_id: str, document_id: str) -> None:
        # Stock is not restored.
        self._delete(DOCUMENTS, owner_id, document_id)

    # -- users ---------------------------------------------------------------

    def get_profile(self, uid: str) -> Optional[UserProfile]:
        d = self._call(lambda: self.db[USERS].find_one({"uid": uid}))
        return UserProfile(**{k: v for k, v in d.items() if k in UserProfile.model_fields}) if d else None

    def has_any_profile(self) -> bool:
        return self._call(lambda: self.db[USERS].find_one({}) is not None)

    def create_profile(self, profile: UserProfile) -> UserProfile:
        self._call(lambda: self.db[USERS].insert_one(profile.model_dump()))
        return profile

    def update_profile(self, uid: str, **fields) -> None:
        res = self._call(lambda: self.db[USERS].update_one({"uid": uid}, {"$set": fields}))
        if res.matched_count == 0:
            raise NotFound(f"user {uid} not found")
