"""
Document store contract and its Redis-backed implementation.

Each collection lives in one Redis hash, ``{prefix}:{collection}``, mapping
document id to the JSON-encoded document. Subcollections are addressed by
path, e.g. ``users/{uid}/addresses``.
"""
import json
import uuid
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol

from storefront.atomic_scripts import AtomicScripts
from storefront.config import Config
from storefront.exceptions import DocumentNotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

CARTS = "carts"
PRODUCTS = "products"
USERS = "users"
ORDERS = "orders"


def addresses_collection(user_id: str) -> str:
    return f"{USERS}/{user_id}/addresses"


class DocumentStore(Protocol):
    """Request/response operations the storefront needs from its document store.

    Documents are plain dicts. Every returned document carries its ``id``.
    Implementations raise StoreUnavailableError when the backend cannot be
    reached.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """Return the document or None if it does not exist."""
        ...

    def query(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        """Return documents whose ``field`` equals ``value``."""
        ...

    def list_all(self, collection: str) -> List[Dict[str, Any]]:
        ...

    def insert(self, collection: str, data: Dict[str, Any]) -> str:
        """Store a new document and return its generated id."""
        ...

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` (dotted paths allowed) into an existing document.

        Raises:
            DocumentNotFoundError: If the document does not exist
        """
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        ...

    def delete_many(self, collection: str, doc_ids: Iterable[str]) -> int:
        ...


def _encode(data: Dict[str, Any]) -> str:
    return json.dumps(data, default=str)


def _store_order(doc: Dict[str, Any]):
    return (str(doc.get("created_at") or ""), doc["id"])


class RedisDocumentStore:
    """
    DocumentStore backed by Redis hashes.

    Fields named in ``indexed_fields`` get a set per value,
    ``{prefix}:{collection}:idx:{field}:{value}``, holding the ids of the
    documents with that value, so ``query`` on them reads only the matching
    documents. Inserts and deletes change a document and its index entries in
    one script.
    """

    def __init__(self, redis_wrapper, prefix: Optional[str] = None, indexed_fields: Iterable[str] = ("user_id",)):
        self.redis = redis_wrapper
        self.prefix = prefix or Config.STORE_KEY_PREFIX
        self.indexed_fields = frozenset(indexed_fields)
        self.scripts = AtomicScripts(redis_wrapper)

    def _collection_key(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    def _index_key(self, collection: str, field: str, value: Any) -> str:
        return f"{self.prefix}:{collection}:idx:{field}:{value}"

    def _index_keys(self, collection: str, doc: Dict[str, Any]) -> List[str]:
        return [
            self._index_key(collection, field, doc[field])
            for field in self.indexed_fields
            if doc.get(field) is not None
        ]

    def _decode(self, doc_id: str, raw: str) -> Optional[Dict[str, Any]]:
        try:
            doc = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping unreadable document {doc_id}: {e}")
            return None
        doc["id"] = doc_id
        return doc

    def get(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        raw = self.redis.hget(self._collection_key(collection), doc_id)
        if raw is None:
            return None
        return self._decode(doc_id, raw)

    def list_all(self, collection: str) -> List[Dict[str, Any]]:
        docs = []
        for doc_id, raw in self.redis.hgetall(self._collection_key(collection)).items():
            doc = self._decode(doc_id, raw)
            if doc is not None:
                docs.append(doc)
        return docs

    def query(self, collection: str, field: str, value: Any) -> List[Dict[str, Any]]:
        """Documents whose ``field`` equals ``value``, oldest first"""
        if field not in self.indexed_fields:
            docs = [doc for doc in self.list_all(collection) if doc.get(field) == value]
            return sorted(docs, key=_store_order)

        ids = sorted(self.redis.smembers(self._index_key(collection, field, value)))
        if not ids:
            return []

        docs = []
        for doc_id, raw in zip(ids, self.redis.hmget(self._collection_key(collection), ids)):
            if raw is None:
                continue
            doc = self._decode(doc_id, raw)
            if doc is not None and doc.get(field) == value:
                docs.append(doc)
        return sorted(docs, key=_store_order)

    def insert(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = str(uuid.uuid4())
        payload = {k: v for k, v in data.items() if k != "id"}
        self.scripts.insert_document(
            self._collection_key(collection),
            self._index_keys(collection, payload),
            doc_id,
            _encode(payload)
        )
        return doc_id

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        reindexed = [field for field in fields if field in self.indexed_fields]
        previous = self.get(collection, doc_id) if reindexed else None

        result = self.scripts.update_fields(self._collection_key(collection), doc_id, fields)
        if result.get("err") == "NOT_FOUND":
            raise DocumentNotFoundError(collection, doc_id)
        if not result.get("ok"):
            raise StoreUnavailableError(f"Update script did not return success: {result}")

        for field in reindexed:
            old_value = previous.get(field) if previous else None
            if old_value == fields[field]:
                continue
            if fields[field] is not None:
                self.redis.sadd(self._index_key(collection, field, fields[field]), doc_id)
            if old_value is not None:
                self.redis.srem(self._index_key(collection, field, old_value), doc_id)

    def delete(self, collection: str, doc_id: str) -> bool:
        return self.delete_many(collection, [doc_id]) > 0

    def delete_many(self, collection: str, doc_ids: Iterable[str]) -> int:
        ids = list(doc_ids)
        if not ids:
            return 0

        collection_key = self._collection_key(collection)
        index_keys = set()
        if self.indexed_fields:
            for doc_id, raw in zip(ids, self.redis.hmget(collection_key, ids)):
                doc = self._decode(doc_id, raw) if raw is not None else None
                if doc is not None:
                    index_keys.update(self._index_keys(collection, doc))

        return self.scripts.delete_documents(collection_key, sorted(index_keys), ids)
