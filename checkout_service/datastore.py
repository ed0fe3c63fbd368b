"""
datastore.py — Document Datastore Boundary

Documents are JSON objects addressed by a `DocumentKey(collection, doc_id)`.
Besides plain get/set/delete, the datastore executes `TransactionalOperation`s:
a declared set of keys plus a pure function from the current documents to the
writes to apply. The function runs against a fresh read of every key inside
the transaction and may raise to abort; nothing is written in that case.

Implementations:
    • MemoryDatastore: in-process, used by tests and local runs.
    • RedisDatastore: optimistic WATCH/MULTI/EXEC transactions on Redis.
"""

import asyncio
import copy
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Mapping, Optional, Protocol, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError, WatchError

from .errors import ExternalServiceError

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
MAX_TRANSACTION_ATTEMPTS = 10

log = logging.getLogger(__name__)

T = TypeVar("T")

Document = Dict[str, Any]


@dataclass(frozen=True)
class DocumentKey:
    collection: str
    doc_id: str

    def __str__(self):
        return f"{self.collection}:{self.doc_id}"


Snapshot = Mapping[DocumentKey, Optional[Document]]
Writes = Mapping[DocumentKey, Optional[Document]]  # None deletes the document


@dataclass(frozen=True)
class TransactionalOperation(Generic[T]):
    """
    A read-modify-write over a fixed set of documents.

    Attributes:
        keys: Every document the operation reads. Writes must stay within these keys.
        apply: Pure function `snapshot -> (writes, result)`. Missing documents appear
            as None in the snapshot. Raising aborts the transaction.
        name: Label used in log messages.
    """
    keys: Tuple[DocumentKey, ...]
    apply: Callable[[Snapshot], Tuple[Writes, T]]
    name: str = "transaction"

    def run(self, snapshot: Snapshot) -> Tuple[Writes, T]:
        writes, result = self.apply(snapshot)
        stray = [key for key in writes if key not in self.keys]
        if stray:
            raise ValueError(f"{self.name} writes undeclared keys: {', '.join(map(str, stray))}")
        return writes, result


class Datastore(Protocol):
    async def get(self, key: DocumentKey) -> Optional[Document]: ...

    async def set(self, key: DocumentKey, document: Document) -> None: ...

    async def delete(self, key: DocumentKey) -> None: ...

    async def run_transaction(self, operation: TransactionalOperation[T]) -> T: ...


class MemoryDatastore:
    """
    In-process datastore. Transactions are serialized by one asyncio lock,
    which gives the same all-or-nothing semantics as the real backend.
    """

    def __init__(self, documents: Optional[Mapping[DocumentKey, Document]] = None):
        self._documents: Dict[DocumentKey, Document] = {
            key: copy.deepcopy(doc) for key, doc in (documents or {}).items()
        }
        self._lock = asyncio.Lock()

    async def get(self, key: DocumentKey) -> Optional[Document]:
        doc = self._documents.get(key)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(self, key: DocumentKey, document: Document) -> None:
        async with self._lock:
            self._documents[key] = copy.deepcopy(document)

    async def delete(self, key: DocumentKey) -> None:
        async with self._lock:
            self._documents.pop(key, None)

    async def run_transaction(self, operation: TransactionalOperation[T]) -> T:
        async with self._lock:
            snapshot = {key: copy.deepcopy(self._documents.get(key)) for key in operation.keys}
            writes, result = operation.run(snapshot)
            for key, doc in writes.items():
                if doc is None:
                    self._documents.pop(key, None)
                else:
                    self._documents[key] = copy.deepcopy(doc)
            return result


class RedisDatastore:
    """
    Redis-backed datastore. Documents are JSON strings under `<collection>:<doc_id>`.

    Transactions WATCH every declared key, re-read them, apply the operation and
    commit with MULTI/EXEC. A concurrent write to any watched key makes EXEC fail;
    the operation is then retried against fresh data.
    """

    def __init__(self, client: Optional[redis.Redis] = None, redis_url: Optional[str] = None):
        self._redis = client or redis.from_url(redis_url or REDIS_URL, decode_responses=True)

    async def close(self):
        await self._redis.aclose()

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[Document]:
        return json.loads(raw) if raw is not None else None

    async def get(self, key: DocumentKey) -> Optional[Document]:
        try:
            return self._decode(await self._redis.get(str(key)))
        except RedisError as e:
            raise ExternalServiceError(f"Datastore read of {key} failed: {e}", service="redis") from e

    async def set(self, key: DocumentKey, document: Document) -> None:
        try:
            await self._redis.set(str(key), json.dumps(document))
        except RedisError as e:
            raise ExternalServiceError(f"Datastore write of {key} failed: {e}", service="redis") from e

    async def delete(self, key: DocumentKey) -> None:
        try:
            await self._redis.delete(str(key))
        except RedisError as e:
            raise ExternalServiceError(f"Datastore delete of {key} failed: {e}", service="redis") from e

    async def run_transaction(self, operation: TransactionalOperation[T]) -> T:
        names = [str(key) for key in operation.keys]
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with self._redis.pipeline(transaction=True) as pipe:
                    await pipe.watch(*names)
                    # Immediate mode after WATCH: reads hit the server directly
                    snapshot = {
                        key: self._decode(await pipe.get(name))
                        for key, name in zip(operation.keys, names)
                    }
                    writes, result = operation.run(snapshot)
                    pipe.multi()
                    for key, doc in writes.items():
                        if doc is None:
                            pipe.delete(str(key))
                        else:
                            pipe.set(str(key), json.dumps(doc))
                    await pipe.execute()
                    return result
            except WatchError:
                log.info(f"{operation.name}: concurrent modification, retrying ({attempt}/{MAX_TRANSACTION_ATTEMPTS}).")
                continue
            except RedisError as e:
                raise ExternalServiceError(f"{operation.name} failed: {e}", service="redis") from e

        raise ExternalServiceError(
            f"{operation.name} aborted after {MAX_TRANSACTION_ATTEMPTS} conflicting attempts",
            service="redis",
        )
