"""
Read-model synchronization.

A SyncShell holds the last known snapshot of the four synced collections
(products, customers, documents, settings) of one owner and fans every new
snapshot out to its subscribers. Snapshots are always the full collection.

The SyncHub keeps one shell per owner and refreshes it whenever the Store
reports a write. Writes made by other processes reach the hub through the
optional ChangeStreamWatcher.

When the store cannot be reached during a refresh the shell keeps serving the
previous snapshot.
"""
import threading
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import ValidationError as SchemaError
from pymongo.errors import PyMongoError

from constants import CUSTOMERS, DEFAULT_SETTINGS, DOCUMENTS, PRODUCTS, SETTINGS, SYNCED_COLLECTIONS
from errors import RemoteUnavailable
from loggers import get_logger
from repository import Store
from schemas import CustomerOut, ProductOut, SalesDocumentOut, Settings

logger = get_logger("commerce.sync")

Listener = Callable[[List[Any]], None]


class Subscription:
    def __init__(self, shell: "SyncShell", collection: str, listener: Listener):
        self._shell = shell
        self.collection = collection
        self.listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._shell._remove(self)


class SyncShell:
    def __init__(self, store: Store, owner_id: str):
        self.store = store
        self.owner_id = owner_id
        self._snapshots: Dict[str, List[Any]] = {}
        self._subscriptions: Dict[str, List[Subscription]] = {c: [] for c in SYNCED_COLLECTIONS}
        self._lock = threading.RLock()

    def _fetch(self, collection: str) -> List[Any]:
        if collection == PRODUCTS:
            return self.store.list_products(self.owner_id)
        if collection == CUSTOMERS:
            return self.store.list_customers(self.owner_id)
        if collection == DOCUMENTS:
            return self.store.list_documents(self.owner_id)
        if collection == SETTINGS:
            return [self.store.get_settings(self.owner_id) or DEFAULT_SETTINGS]
        raise ValueError(f"Unknown collection: {collection}")

    def subscribe(self, collection: str, listener: Listener) -> Subscription:
        """Register `listener`; it receives the current snapshot right away, then every new one."""
        if collection not in self._subscriptions:
            raise ValueError(f"Unknown collection: {collection}")
        data = self.snapshot(collection)
        subscription = Subscription(self, collection, listener)
        with self._lock:
            self._subscriptions[collection].append(subscription)
        listener(data)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subs = self._subscriptions[subscription.collection]
            if subscription in subs:
                subs.remove(subscription)

    def snapshot(self, collection: str) -> List[Any]:
        with self._lock:
            if collection not in self._snapshots:
                # nothing cached yet: a failure here has no fallback
                self._snapshots[collection] = self._fetch(collection)
            return list(self._snapshots[collection])

    def refresh(self, *collections: str) -> None:
        for collection in collections or SYNCED_COLLECTIONS:
            if collection not in self._subscriptions:
                continue
            with self._lock:
                try:
                    data = self._fetch(collection)
                except RemoteUnavailable:
                    logger.warning("Keeping last known %s snapshot for %s", collection, self.owner_id)
                    continue
                except SchemaError:
                    # a stored record no longer matches its model
                    logger.exception("Unreadable %s record for %s, keeping last snapshot", collection, self.owner_id)
                    continue
                self._snapshots[collection] = data
                subscribers = list(self._subscriptions[collection])
            for sub in subscribers:
                self._deliver(sub, list(data))

    def _deliver(self, sub: Subscription, data: List[Any]) -> None:
        try:
            sub.listener(data)
        except Exception:
            # one failing subscriber must not starve the others
            logger.exception("Listener error on %s", sub.collection)

    def close(self) -> None:
        with self._lock:
            for subs in self._subscriptions.values():
                for sub in subs:
                    sub.active = False
                subs.clear()
            self._snapshots.clear()

    # Typed accessors

    def products(self) -> List[ProductOut]:
        return self.snapshot(PRODUCTS)

    def product(self, product_id: str) -> Optional[ProductOut]:
        return next((p for p in self.products() if p.id == product_id), None)

    def customers(self) -> List[CustomerOut]:
        return self.snapshot(CUSTOMERS)

    def customer(self, customer_id: str) -> Optional[CustomerOut]:
        return next((c for c in self.customers() if c.id == customer_id), None)

    def documents(self) -> List[SalesDocumentOut]:
        return self.snapshot(DOCUMENTS)

    def settings(self) -> Settings:
        return self.snapshot(SETTINGS)[0]


class SyncHub:
    def __init__(self, store: Store):
        self.store = store
        self._shells: Dict[str, SyncShell] = {}
        self._lock = threading.Lock()
        store.add_change_listener(self.on_change)

    def shell(self, owner_id: str) -> SyncShell:
        with self._lock:
            shell = self._shells.get(owner_id)
            if shell is None:
                shell = SyncShell(self.store, owner_id)
                self._shells[owner_id] = shell
            return shell

    def on_change(self, owner_id: str, collections: Iterable[str]) -> None:
        with self._lock:
            shell = self._shells.get(owner_id)
        if shell is not None:
            shell.refresh(*collections)

    def refresh_collection(self, collection: str) -> None:
        with self._lock:
            shells = list(self._shells.values())
        for shell in shells:
            shell.refresh(collection)

    def close(self) -> None:
        with self._lock:
            shells = list(self._shells.values())
            self._shells.clear()
        for shell in shells:
            shell.close()


class ChangeStreamWatcher(threading.Thread):
    """Refresh shells on writes from other processes. Needs a replica set."""

    def __init__(self, database, hub: SyncHub, retry_delay: float = 5.0):
        super().__init__(name="change-stream-watcher", daemon=True)
        self.database = database
        self.hub = hub
        self.retry_delay = retry_delay
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.is_set():
            try:
                with self.database.watch(full_document="updateLookup") as stream:
                    while not self._stopped.is_set():
                        change = stream.try_next()
                        if change is None:
                            self._stopped.wait(0.5)
                            continue
                        self.dispatch(change)
            except PyMongoError as e:
                logger.error("Change stream interrupted: %s", e)
                self._stopped.wait(self.retry_delay)

    def dispatch(self, change: Dict[str, Any]) -> None:
        collection = change.get("ns", {}).get("coll")
        if collection not in SYNCED_COLLECTIONS:
            return
        owner_id = (change.get("fullDocument") or {}).get("owner_id")
        if owner_id:
            self.hub.on_change(owner_id, (collection,))
        else:
            # deletes carry no document, so every shell reloads the collection
            self.hub.refresh_collection(collection)

    def stop(self) -> None:
        self._stopped.set()
