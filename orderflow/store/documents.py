"""Path-addressed document store.

The core only needs a keyed document store with partial updates:

- ``get(path)``      -> document dict or None
- ``set(path, doc)`` -> replace the whole document
- ``update(path, fields)`` -> write ``{"timeline/confirmedAt": ...}``-style
  field paths; each field is written atomically, last writer wins per field
- ``children(path)`` -> ids directly below a path

Two backends implement the same protocol: ``MemoryDocumentStore`` (tests and
local runs) and ``RedisDocumentStore``. The Redis backend keeps each document
as a hash of flattened field paths with JSON-encoded values, and records
every path segment in a per-parent set so ``children()`` needs no SCAN.
"""

from __future__ import annotations

import copy
import json
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as redis


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for path-addressed document stores."""

    async def get(self, path: str) -> dict[str, Any] | None:
        ...

    async def set(self, path: str, doc: dict[str, Any]) -> None:
        ...

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        ...

    async def children(self, path: str) -> list[str]:
        ...


def _segments(path: str) -> list[str]:
    return [s for s in path.strip("/").split("/") if s]


def flatten(doc: dict[str, Any], base: str = "") -> dict[str, Any]:
    """Flatten nested dicts into ``{"a/b": value}`` field paths."""
    flat: dict[str, Any] = {}
    for key, value in doc.items():
        field_path = f"{base}/{key}" if base else str(key)
        if isinstance(value, dict):
            flat.update(flatten(value, field_path))
        else:
            flat[field_path] = value
    return flat


def unflatten(flat: dict[str, Any]) -> dict[str, Any]:
    """Inverse of ``flatten``."""
    doc: dict[str, Any] = {}
    for field_path, value in flat.items():
        parts = _segments(field_path)
        node = doc
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return doc


class MemoryDocumentStore:
    """In-memory document tree with the same semantics as the Redis store.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the loop.
    """

    def __init__(self, initial: dict[str, Any] | None = None):
        self._root: dict[str, Any] = copy.deepcopy(initial) if initial else {}

    def _node(self, path: str, create: bool = False) -> dict[str, Any] | None:
        node = self._root
        for part in _segments(path):
            child = node.get(part)
            if not isinstance(child, dict):
                if not create:
                    return None
                child = {}
                node[part] = child
            node = child
        return node

    async def get(self, path: str) -> dict[str, Any] | None:
        node = self._node(path)
        if not node:
            return None
        return copy.deepcopy(node)

    async def set(self, path: str, doc: dict[str, Any]) -> None:
        parts = _segments(path)
        parent = self._node("/".join(parts[:-1]), create=True)
        parent[parts[-1]] = copy.deepcopy(doc)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        node = self._node(path, create=True)
        for field_path, value in fields.items():
            parts = _segments(field_path)
            target = node
            for part in parts[:-1]:
                child = target.get(part)
                if not isinstance(child, dict):
                    child = {}
                    target[part] = child
                target = child
            target[parts[-1]] = copy.deepcopy(value)

    async def children(self, path: str) -> list[str]:
        node = self._node(path)
        if not node:
            return []
        return [key for key, value in node.items() if isinstance(value, dict)]

    def dump(self) -> dict[str, Any]:
        """Deep copy of the whole tree (test helper)."""
        return copy.deepcopy(self._root)


class RedisDocumentStore:
    """Redis-backed document store (hash per document, set per parent)."""

    def __init__(self, client: redis.Redis, prefix: str = "orderflow:"):
        self._redis = client
        self._prefix = prefix

    def _doc_key(self, path: str) -> str:
        return f"{self._prefix}doc:{'/'.join(_segments(path))}"

    def _children_key(self, path: str) -> str:
        return f"{self._prefix}children:{'/'.join(_segments(path))}"

    def _index_ancestors(self, pipe: Any, path: str) -> None:
        parts = _segments(path)
        for i in range(len(parts)):
            pipe.sadd(self._children_key("/".join(parts[:i])), parts[i])

    async def get(self, path: str) -> dict[str, Any] | None:
        raw = await self._redis.hgetall(self._doc_key(path))
        if not raw:
            return None
        return unflatten({k: json.loads(v) for k, v in raw.items()})

    async def set(self, path: str, doc: dict[str, Any]) -> None:
        mapping = {k: json.dumps(v) for k, v in flatten(doc).items()}
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._doc_key(path))
            if mapping:
                pipe.hset(self._doc_key(path), mapping=mapping)
            self._index_ancestors(pipe, path)
            await pipe.execute()

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        flat: dict[str, Any] = {}
        for field_path, value in fields.items():
            if isinstance(value, dict):
                flat.update(flatten(value, field_path))
            else:
                flat[field_path] = value
        if not flat:
            return
        mapping = {k: json.dumps(v) for k, v in flat.items()}
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._doc_key(path), mapping=mapping)
            self._index_ancestors(pipe, path)
            await pipe.execute()

    async def children(self, path: str) -> list[str]:
        members = await self._redis.smembers(self._children_key(path))
        return sorted(members)
