"""
Remote document client

Documents are addressed by (collection, name) and only ever read whole or
overwritten whole. In MongoDB the name becomes the document ``_id``.
"""
import copy
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings


class DocumentStoreError(Exception):
    """A get or put against the document store failed."""


class DocumentClient(ABC):
    """Key/value document store with two-level addressing."""

    @abstractmethod
    def get(self, collection: str, name: str) -> Optional[dict]:
        """Return the stored document body, or ``None`` if it does not exist."""

    @abstractmethod
    def put(self, collection: str, name: str, data: dict) -> None:
        """Overwrite the document at ``(collection, name)`` with ``data``."""


class MongoDocumentClient(DocumentClient):
    def __init__(self, db: Database):
        self._db = db

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoDocumentClient":
        client = MongoClient(settings.database_url)
        return cls(client[settings.database_name])

    def get(self, collection: str, name: str) -> Optional[dict]:
        try:
            doc = self._db[collection].find_one({"_id": name})
        except PyMongoError as e:
            raise DocumentStoreError(str(e)) from e
        if doc is None:
            return None
        doc.pop("_id", None)
        return doc

    def put(self, collection: str, name: str, data: dict) -> None:
        body = dict(data)
        body["_id"] = name
        try:
            self._db[collection].replace_one({"_id": name}, body, upsert=True)
        except PyMongoError as e:
            raise DocumentStoreError(str(e)) from e


class InMemoryDocumentClient(DocumentClient):
    """Volatile store, primarily for tests and local runs without MongoDB."""

    def __init__(self) -> None:
        self._docs: Dict[Tuple[str, str], dict] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, name: str) -> Optional[dict]:
        with self._lock:
            doc = self._docs.get((collection, name))
            return copy.deepcopy(doc) if doc is not None else None

    def put(self, collection: str, name: str, data: dict) -> None:
        with self._lock:
            self._docs[(collection, name)] = copy.deepcopy(data)
