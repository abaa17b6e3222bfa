"""
Document store client for the marketplace.

Wraps a pymongo `Database` with the handful of operations the lifecycle
modules need: create/read/update/query on named collections with
server-assigned timestamps, real-time snapshot subscriptions, creation hooks
(used for push forwarding) and a unit of work for multi-document transitions.

Documents are returned as plain dicts with the Mongo `_id` exposed as a string
`id`, like the rest of the API expects.
"""
import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.database import Database

from errors import NotFound

logger = logging.getLogger(__name__)

Sort = List[Tuple[str, int]]
Snapshot = List[Dict[str, Any]]

NEWEST_FIRST: Sort = [("created_at", DESCENDING)]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_object_id(id_str: Any) -> Any:
    # Ids minted by Mongo are ObjectIds; externally supplied ids (auth uids,
    # conversation keys) stay plain strings.
    if isinstance(id_str, ObjectId):
        return id_str
    if isinstance(id_str, str) and ObjectId.is_valid(id_str):
        return ObjectId(id_str)
    return id_str


def serialize(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return doc
    d = dict(doc)
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def _session_kwargs(session) -> Dict[str, Any]:
    return {"session": session} if session is not None else {}


class Subscription:
    """Handle returned by `DocumentStore.subscribe`. Calling it unsubscribes."""

    def __init__(self, store: "DocumentStore", collection_name: str, filter_dict: Dict[str, Any],
                 callback: Callable[[Snapshot], None], sort: Optional[Sort], limit: Optional[int]):
        self.store = store
        self.collection_name = collection_name
        self.filter = filter_dict
        self.callback = callback
        self.sort = sort
        self.limit = limit
        self.active = True

    def refresh(self) -> None:
        if not self.active:
            return
        docs = self.store.get_documents(self.collection_name, self.filter, sort=self.sort, limit=self.limit)
        self.callback(docs)

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self.store._remove_listener(self)

    def __call__(self) -> None:
        self.unsubscribe()


class UnitOfWork:
    """
    Groups the writes of one multi-document transition.

    With a session the writes ride on a native Mongo transaction. Without one
    every write first records how to undo itself, and `rollback()` replays the
    undo log newest-first.
    """

    def __init__(self, store: "DocumentStore", session=None):
        self.store = store
        self.session = session
        self.touched = set()
        self.created: List[Tuple[str, str]] = []
        self._undo: List[Callable[[], Any]] = []

    def get(self, collection_name: str, doc_id: Any) -> Optional[Dict[str, Any]]:
        return self.store.get_document(collection_name, doc_id, session=self.session)

    def require(self, collection_name: str, doc_id: Any, entity: str) -> Dict[str, Any]:
        doc = self.get(collection_name, doc_id)
        if not doc:
            raise NotFound(entity, str(doc_id))
        return doc

    def find(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
             sort: Optional[Sort] = None) -> Snapshot:
        return self.store.get_documents(collection_name, filter_dict, sort=sort, session=self.session)

    def create(self, collection_name: str, data: Dict[str, Any], doc_id: Any = None) -> str:
        new_id = self.store._insert(collection_name, data, doc_id=doc_id, session=self.session)
        if self.session is None:
            collection = self.store.db[collection_name]
            key = to_object_id(new_id)
            self._undo.append(lambda: collection.delete_one({"_id": key}))
        self.touched.add(collection_name)
        self.created.append((collection_name, new_id))
        return new_id

    def update(self, collection_name: str, doc_id: Any, updates: Optional[Dict[str, Any]] = None,
               **ops) -> Optional[Dict[str, Any]]:
        if self.session is not None:
            doc = self.store._update(collection_name, doc_id, updates, session=self.session, **ops)
        else:
            # The pre-image comes from the same filtered write, so a write that
            # matched nothing leaves nothing to undo.
            prior = self.store._update(collection_name, doc_id, updates, before=True, **ops)
            written = None
            if prior is not None:
                written = self.store.db[collection_name].find_one({"_id": prior["_id"]})
            if written is not None:
                self._undo.append(self._restore(collection_name, prior, written))
            doc = serialize(written)
        if doc is not None:
            self.touched.add(collection_name)
        return doc

    def _restore(self, collection_name: str, prior: Dict[str, Any], written: Dict[str, Any]) -> Callable[[], None]:
        collection = self.store.db[collection_name]

        def undo() -> None:
            if collection.find_one({"_id": prior["_id"]}) != written:
                logger.warning("%s %s was changed by another writer; not restored", collection_name, prior["_id"])
                return
            collection.replace_one({"_id": prior["_id"], "updated_at": written["updated_at"]}, prior)

        return undo

    def rollback(self) -> None:
        while self._undo:
            undo = self._undo.pop()
            try:
                undo()
            except Exception:
                logger.exception("Compensating write failed; manual reconciliation needed")


class DocumentStore:
    def __init__(self, database: Database, use_transactions: bool = False, client: Optional[MongoClient] = None):
        self.db = database
        self.use_transactions = use_transactions
        self.client = client
        self._listeners: Dict[str, List[Subscription]] = defaultdict(list)
        self._create_hooks: Dict[str, List[Callable[[Dict[str, Any]], None]]] = defaultdict(list)
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings) -> "DocumentStore":
        client = MongoClient(settings.database_url, tz_aware=True)
        return cls(client[settings.database_name], use_transactions=settings.use_transactions, client=client)

    def close(self) -> None:
        with self._lock:
            self._listeners.clear()
            self._create_hooks.clear()
        if self.client is not None:
            self.client.close()

    def ensure_indexes(self) -> None:
        self.db["requests"].create_index([("created_by", ASCENDING), ("created_at", DESCENDING)])
        self.db["requests"].create_index([("status", ASCENDING)])
        self.db["quotes"].create_index([("request_id", ASCENDING)])
        self.db["quotes"].create_index([("provider_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["quotes"].create_index([("client_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["projects"].create_index([("quote_id", ASCENDING)])
        self.db["invoices"].create_index([("project_id", ASCENDING)])
        self.db["notifications"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["messages"].create_index([("conversation_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["payments"].create_index([("payment_id", ASCENDING)], unique=True)
        self.db["users"].create_index([("role", ASCENDING)])

    # ---------------------------
    # Reads
    # ---------------------------

    def get_document(self, collection_name: str, doc_id: Any, session=None) -> Optional[Dict[str, Any]]:
        doc = self.db[collection_name].find_one({"_id": to_object_id(doc_id)}, **_session_kwargs(session))
        return serialize(doc)

    def require_document(self, collection_name: str, doc_id: Any, entity: str) -> Dict[str, Any]:
        doc = self.get_document(collection_name, doc_id)
        if not doc:
            raise NotFound(entity, str(doc_id))
        return doc

    def get_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None,
                      sort: Optional[Sort] = None, limit: Optional[int] = None, session=None) -> Snapshot:
        cursor = self.db[collection_name].find(filter_dict or {}, **_session_kwargs(session))
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize(doc) for doc in cursor]

    def find_one(self, collection_name: str, filter_dict: Dict[str, Any],
                 sort: Optional[Sort] = None) -> Optional[Dict[str, Any]]:
        docs = self.get_documents(collection_name, filter_dict, sort=sort, limit=1)
        return docs[0] if docs else None

    def count_documents(self, collection_name: str, filter_dict: Optional[Dict[str, Any]] = None) -> int:
        return self.db[collection_name].count_documents(filter_dict or {})

    # ---------------------------
    # Writes
    # ---------------------------

    def _insert(self, collection_name: str, data: Dict[str, Any], doc_id: Any = None, session=None) -> str:
        doc = {k: v for k, v in data.items() if k not in ("id", "_id")}
        now = now_utc()
        doc.setdefault("created_at", now)
        doc["updated_at"] = now
        if doc_id is not None:
            doc["_id"] = to_object_id(doc_id)
        result = self.db[collection_name].insert_one(doc, **_session_kwargs(session))
        return str(result.inserted_id)

    def _update(self, collection_name: str, doc_id: Any, updates: Optional[Dict[str, Any]] = None, *,
                expected: Optional[Dict[str, Any]] = None, push: Optional[Dict[str, Any]] = None,
                add_to_set: Optional[Dict[str, Any]] = None, pull: Optional[Dict[str, Any]] = None,
                inc: Optional[Dict[str, Any]] = None, session=None, before: bool = False) -> Optional[Dict[str, Any]]:
        """With `before`, return the raw document as it was just before this write."""
        fields = {k: v for k, v in (updates or {}).items() if k not in ("id", "_id")}
        fields["updated_at"] = now_utc()
        ops: Dict[str, Any] = {"$set": fields}
        if push:
            ops["$push"] = push
        if add_to_set:
            ops["$addToSet"] = add_to_set
        if pull:
            ops["$pull"] = pull
        if inc:
            ops["$inc"] = inc
        query = {"_id": to_object_id(doc_id)}
        if expected:
            query.update(expected)
        doc = self.db[collection_name].find_one_and_update(
            query, ops, return_document=ReturnDocument.BEFORE if before else ReturnDocument.AFTER,
            **_session_kwargs(session)
        )
        return doc if before else serialize(doc)

    def create_document(self, collection_name: str, data: Dict[str, Any], doc_id: Any = None) -> str:
        new_id = self._insert(collection_name, data, doc_id=doc_id)
        self._after_commit({collection_name}, [(collection_name, new_id)])
        return new_id

    def update_document(self, collection_name: str, doc_id: Any, updates: Optional[Dict[str, Any]] = None,
                        **ops) -> Optional[Dict[str, Any]]:
        """Apply `$set` (plus optional array/counter operators); None when nothing matched."""
        doc = self._update(collection_name, doc_id, updates, **ops)
        if doc is not None:
            self._publish(collection_name)
        return doc

    def update_documents(self, collection_name: str, filter_dict: Dict[str, Any], updates: Dict[str, Any]) -> int:
        fields = dict(updates)
        fields["updated_at"] = now_utc()
        result = self.db[collection_name].update_many(filter_dict, {"$set": fields})
        if result.modified_count:
            self._publish(collection_name)
        return result.modified_count

    @contextmanager
    def transaction(self) -> Iterator[UnitOfWork]:
        if self.use_transactions:
            client = self.client or self.db.client
            with client.start_session() as session:
                with session.start_transaction():
                    uow = UnitOfWork(self, session)
                    yield uow
        else:
            uow = UnitOfWork(self)
            try:
                yield uow
            except Exception:
                logger.warning("Unit of work failed after touching %s; rolling back", sorted(uow.touched))
                uow.rollback()
                raise
        self._after_commit(uow.touched, uow.created)

    # ---------------------------
    # Subscriptions & hooks
    # ---------------------------

    def subscribe(self, collection_name: str, filter_dict: Dict[str, Any], callback: Callable[[Snapshot], None],
                  sort: Optional[Sort] = None, limit: Optional[int] = None) -> Subscription:
        """Push the full matching list now and after every committed write to the collection."""
        sub = Subscription(self, collection_name, filter_dict, callback, sort, limit)
        with self._lock:
            self._listeners[collection_name].append(sub)
        self._refresh(sub)
        return sub

    def on_create(self, collection_name: str, hook: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        with self._lock:
            self._create_hooks[collection_name].append(hook)

        def remove() -> None:
            with self._lock:
                if hook in self._create_hooks[collection_name]:
                    self._create_hooks[collection_name].remove(hook)

        return remove

    def listener_count(self, collection_name: Optional[str] = None) -> int:
        with self._lock:
            if collection_name is not None:
                return len(self._listeners.get(collection_name, []))
            return sum(len(subs) for subs in self._listeners.values())

    def _remove_listener(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._listeners.get(sub.collection_name, [])
            if sub in subs:
                subs.remove(sub)

    def _refresh(self, sub: Subscription) -> None:
        try:
            sub.refresh()
        except Exception:
            logger.exception("Snapshot listener on %s failed", sub.collection_name)

    def _publish(self, collection_name: str) -> None:
        with self._lock:
            subs = list(self._listeners.get(collection_name, []))
        for sub in subs:
            self._refresh(sub)

    def _after_commit(self, touched, created) -> None:
        for collection_name, new_id in created:
            with self._lock:
                hooks = list(self._create_hooks.get(collection_name, []))
            if not hooks:
                continue
            doc = self.get_document(collection_name, new_id)
            for hook in hooks:
                try:
                    hook(doc)
                except Exception:
                    logger.exception("Create hook on %s failed for %s", collection_name, new_id)
        for collection_name in touched:
            self._publish(collection_name)
