"""Remote document store interface.

This module defines the contract the repositories depend on:
- Document references, queries and snapshots
- Live subscriptions delivering snapshots as async iterators
- Atomic field increments, write batches and transactions

Two implementations are provided: ``store.memory.InMemoryStore`` (in-process)
and ``store.postgres.PostgresStore`` (asyncpg document table with LISTEN/NOTIFY).
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, TypeVar, Union
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

OPERATORS = ('==', 'in')

class StoreError(Exception):
    """Base exception for remote store failures."""
    pass

class DocumentNotFoundError(StoreError):
    """Raised when updating a document that does not exist."""
    pass

class TransactionConflictError(StoreError):
    """Raised when a transaction could not be applied after retrying."""
    pass

def composite_key(user_id: str, target_id: str) -> str:
    """Derive the id of a join record linking a user to a target.

    The id is deterministic so that creating the same relation twice addresses
    the same document.
    """
    if not user_id or not target_id:
        raise ValueError("Both user_id and target_id are required for a composite key")
    return f"{user_id}-{target_id}"

def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)

def new_document_id() -> str:
    """Generate a random document id."""
    return uuid.uuid4().hex[:20]

@dataclass(frozen=True)
class Increment:
    """Field value applied server-side as ``current + delta``."""
    delta: Union[int, float]

def increment(delta: Union[int, float]) -> Increment:
    """Build an atomic increment usable as a value inside ``update``."""
    return Increment(delta)

def apply_updates(data: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    """Merge partial fields into a copy of ``data``, resolving increments."""
    result = dict(data)
    for key, value in fields.items():
        if isinstance(value, Increment):
            result[key] = (result.get(key) or 0) + value.delta
        else:
            result[key] = value
    return result

class Direction(str, Enum):
    """Sort direction for ordered queries."""
    ASCENDING = 'asc'
    DESCENDING = 'desc'

@dataclass(frozen=True)
class DocumentRef:
    """Reference to a single document in a collection."""
    collection: str
    id: str

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.id}"

@dataclass(frozen=True)
class Filter:
    """Single field predicate."""
    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        if self.field not in data:
            return False
        if self.op == '==':
            return data[self.field] == self.value
        return data[self.field] in self.value

def _sort_key(value: Any) -> Tuple[bool, Any]:
    return (value is not None, value)

@dataclass(frozen=True)
class Query:
    """Immutable query description: equality/"in" filters, one ordering, a limit."""
    collection: str
    filters: Tuple[Filter, ...] = ()
    ordering: Optional[Tuple[str, Direction]] = None
    max_results: Optional[int] = None

    def where(self, field_name: str, op: str, value: Any) -> 'Query':
        if op not in OPERATORS:
            raise ValueError(f"Unsupported operator {op!r}, expected one of {OPERATORS}")
        if op == 'in':
            value = tuple(value)
            if not value:
                raise ValueError("An 'in' filter requires at least one value")
        return replace(self, filters=self.filters + (Filter(field_name, op, value),))

    def order_by(self, field_name: str, direction: Direction = Direction.ASCENDING) -> 'Query':
        return replace(self, ordering=(field_name, direction))

    def limit(self, count: int) -> 'Query':
        if count < 1:
            raise ValueError("Query limit must be positive")
        return replace(self, max_results=count)

    def matches(self, data: Dict[str, Any]) -> bool:
        return all(f.matches(data) for f in self.filters)

    def apply(self, documents: Iterable['DocumentSnapshot']) -> List['DocumentSnapshot']:
        """Filter, order and limit documents the way the store would."""
        result = [doc for doc in documents if doc.exists and self.matches(doc.data)]
        if self.ordering:
            field_name, direction = self.ordering
            result.sort(
                key=lambda doc: _sort_key(doc.data.get(field_name)),
                reverse=direction is Direction.DESCENDING
            )
        if self.max_results is not None:
            result = result[:self.max_results]
        return result

@dataclass(frozen=True)
class DocumentSnapshot:
    """Point-in-time copy of a document; ``data`` is None when it does not exist."""
    ref: DocumentRef
    data: Optional[Dict[str, Any]] = None

    @property
    def id(self) -> str:
        return self.ref.id

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_name: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(field_name, default)

@dataclass(frozen=True)
class QuerySnapshot:
    """Point-in-time result of a query."""
    query: Query
    documents: Tuple[DocumentSnapshot, ...] = ()

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def empty(self) -> bool:
        return not self.documents

class _Closed:
    pass

_CLOSED = _Closed()

@dataclass
class _Failure:
    error: BaseException

class Subscription:
    """Live listener delivering snapshots as an async iterator.

    Closing the subscription (explicitly, through ``async with`` or when the
    store fails the listener) releases the listener in the store. A listener
    failure is raised once from the iterator, then iteration stops.
    """

    def __init__(self, description: str, on_close: Optional[Callable[['Subscription'], None]] = None):
        self.description = description
        self._queue: asyncio.Queue = asyncio.Queue()
        self._on_close = on_close
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: Any) -> None:
        """Deliver a snapshot to the consumer."""
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def fail(self, error: BaseException) -> None:
        """Terminate the listener with an error."""
        if self._closed:
            return
        logger.warning(f"Listener for {self.description} failed: {error}")
        self._queue.put_nowait(_Failure(error))
        self._release()

    def close(self) -> None:
        """Stop listening and release store resources. Idempotent."""
        if self._closed:
            return
        self._release()
        self._queue.put_nowait(_CLOSED)

    def _release(self) -> None:
        self._closed = True
        callback, self._on_close = self._on_close, None
        if callback:
            callback(self)
        logger.debug(f"Released listener for {self.description}")

    def __aiter__(self) -> 'Subscription':
        return self

    async def __anext__(self) -> Any:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            raise item.error
        return item

    async def __aenter__(self) -> 'Subscription':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

@dataclass(frozen=True)
class WriteOperation:
    """Single buffered write: ``set``, ``update`` or ``delete``."""
    kind: str
    ref: DocumentRef
    data: Dict[str, Any] = field(default_factory=dict)

class WriteBatch:
    """Accumulates writes and applies them all-or-nothing on ``commit``."""

    def __init__(self, store: 'RemoteStore'):
        self._store = store
        self._operations: List[WriteOperation] = []
        self._committed = False

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> 'WriteBatch':
        self._operations.append(WriteOperation('set', ref, dict(data)))
        return self

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> 'WriteBatch':
        self._operations.append(WriteOperation('update', ref, dict(fields)))
        return self

    def delete(self, ref: DocumentRef) -> 'WriteBatch':
        self._operations.append(WriteOperation('delete', ref))
        return self

    def __len__(self) -> int:
        return len(self._operations)

    async def commit(self) -> None:
        if self._committed:
            raise StoreError("Batch has already been committed")
        self._committed = True
        if self._operations:
            await self._store.commit(list(self._operations))

class Transaction:
    """Reads through to the store and buffers writes.

    All reads must happen before the first write. The buffered writes are
    applied atomically once the transaction function returns.
    """

    def __init__(self, reader: Callable[[DocumentRef], Awaitable[DocumentSnapshot]]):
        self._reader = reader
        self.operations: List[WriteOperation] = []
        self.reads: Dict[DocumentRef, DocumentSnapshot] = {}

    async def get(self, ref: DocumentRef) -> DocumentSnapshot:
        if self.operations:
            raise StoreError("Transactions require all reads to happen before writes")
        snapshot = await self._reader(ref)
        self.reads[ref] = snapshot
        return snapshot

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self.operations.append(WriteOperation('set', ref, dict(data)))

    def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None:
        self.operations.append(WriteOperation('update', ref, dict(fields)))

    def delete(self, ref: DocumentRef) -> None:
        self.operations.append(WriteOperation('delete', ref))

TransactionFunction = Callable[[Transaction], Awaitable[T]]

class RemoteStore(ABC):
    """Document store with live listeners, batches and transactions."""

    @abstractmethod
    def subscribe_query(self, query: Query) -> Subscription:
        """Listen to a query; yields ``QuerySnapshot`` values."""

    @abstractmethod
    def subscribe_document(self, ref: DocumentRef) -> Subscription:
        """Listen to one document; yields ``DocumentSnapshot`` values."""

    @abstractmethod
    async def get(self, ref: DocumentRef) -> DocumentSnapshot:
        """One-shot document read."""

    @abstractmethod
    async def query(self, query: Query) -> QuerySnapshot:
        """One-shot query read."""

    @abstractmethod
    async def commit(self, operations: List[WriteOperation]) -> None:
        """Apply writes atomically."""

    @abstractmethod
    async def run_transaction(self, fn: TransactionFunction) -> Any:
        """Run ``fn`` with a ``Transaction`` and apply its writes atomically."""

    def new_id(self, collection: str) -> str:
        return new_document_id()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        await self.commit([WriteOperation('set', ref, dict(data))])

    async def update(self, ref: DocumentRef, fields: Dict[str, Any]) -> None:
        await self.commit([WriteOperation('update', ref, dict(fields))])

    async def delete(self, ref: DocumentRef) -> None:
        await self.commit([WriteOperation('delete', ref)])

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        ref = DocumentRef(collection, self.new_id(collection))
        await self.set(ref, data)
        return ref.id

__all__ = [
    'RemoteStore',
    'Subscription',
    'Query',
    'Filter',
    'Direction',
    'DocumentRef',
    'DocumentSnapshot',
    'QuerySnapshot',
    'WriteBatch',
    'WriteOperation',
    'Transaction',
    'Increment',
    'increment',
    'apply_updates',
    'composite_key',
    'utcnow',
    'new_document_id',
    'StoreError',
    'DocumentNotFoundError',
    'TransactionConflictError'
]
