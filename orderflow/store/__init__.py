"""Persistence layer: path-addressed documents and the order store."""

from orderflow.store.documents import (
    DocumentStore,
    MemoryDocumentStore,
    RedisDocumentStore,
)
from orderflow.store.orders import OrderStore, order_path

__all__ = [
    "DocumentStore",
    "MemoryDocumentStore",
    "OrderStore",
    "RedisDocumentStore",
    "order_path",
]
