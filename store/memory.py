"""In-process implementation of the remote store.

Documents are kept as plain dicts per collection. Every commit is applied
under a single lock and then re-evaluated against the active listeners, which
receive a new snapshot only when their result actually changed.
"""

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Set

from . import (
    RemoteStore,
    Subscription,
    Query,
    DocumentRef,
    DocumentSnapshot,
    QuerySnapshot,
    Transaction,
    TransactionFunction,
    WriteOperation,
    apply_updates,
    StoreError,
    DocumentNotFoundError
)

logger = logging.getLogger(__name__)

Collections = Dict[str, Dict[str, Dict[str, Any]]]

class InMemoryStore(RemoteStore):
    """Remote store backed by dictionaries."""

    def __init__(self):
        self._collections: Collections = {}
        self._lock = asyncio.Lock()
        self._query_listeners: Dict[Subscription, List[Any]] = {}
        self._document_listeners: Dict[Subscription, List[Any]] = {}

    @property
    def listener_count(self) -> int:
        """Number of live listeners currently registered."""
        return len(self._query_listeners) + len(self._document_listeners)

    def _snapshot(self, ref: DocumentRef) -> DocumentSnapshot:
        data = self._collections.get(ref.collection, {}).get(ref.id)
        return DocumentSnapshot(ref, copy.deepcopy(data) if data is not None else None)

    def _run_query(self, query: Query) -> QuerySnapshot:
        documents = (
            DocumentSnapshot(DocumentRef(query.collection, doc_id), copy.deepcopy(data))
            for doc_id, data in self._collections.get(query.collection, {}).items()
        )
        return QuerySnapshot(query, tuple(query.apply(documents)))

    def _remove_listener(self, subscription: Subscription) -> None:
        self._query_listeners.pop(subscription, None)
        self._document_listeners.pop(subscription, None)

    def subscribe_query(self, query: Query) -> Subscription:
        subscription = Subscription(f"query on {query.collection}", on_close=self._remove_listener)
        snapshot = self._run_query(query)
        self._query_listeners[subscription] = [query, snapshot]
        subscription.push(snapshot)
        return subscription

    def subscribe_document(self, ref: DocumentRef) -> Subscription:
        subscription = Subscription(f"document {ref.path}", on_close=self._remove_listener)
        snapshot = self._snapshot(ref)
        self._document_listeners[subscription] = [ref, snapshot]
        subscription.push(snapshot)
        return subscription

    async def get(self, ref: DocumentRef) -> DocumentSnapshot:
        return self._snapshot(ref)

    async def query(self, query: Query) -> QuerySnapshot:
        return self._run_query(query)

    def _apply(self, operations: List[WriteOperation]) -> Set[str]:
        """Apply operations all-or-nothing, returning the touched collections."""
        touched = {op.ref.collection for op in operations}
        working: Collections = {
            name: dict(self._collections.get(name, {})) for name in touched
        }

        for op in operations:
            docs = working[op.ref.collection]
            if op.kind == 'set':
                docs[op.ref.id] = copy.deepcopy(op.data)
            elif op.kind == 'update':
                if op.ref.id not in docs:
                    raise DocumentNotFoundError(f"No document to update: {op.ref.path}")
                docs[op.ref.id] = apply_updates(docs[op.ref.id], copy.deepcopy(op.data))
            elif op.kind == 'delete':
                docs.pop(op.ref.id, None)
            else:
                raise StoreError(f"Unknown write operation: {op.kind}")

        self._collections.update(working)
        return touched

    def _notify(self, touched: Set[str]) -> None:
        for subscription, state in list(self._query_listeners.items()):
            query, last = state
            if query.collection not in touched:
                continue
            snapshot = self._run_query(query)
            if snapshot.documents != last.documents:
                state[1] = snapshot
                subscription.push(snapshot)

        for subscription, state in list(self._document_listeners.items()):
            ref, last = state
            if ref.collection not in touched:
                continue
            snapshot = self._snapshot(ref)
            if snapshot != last:
                state[1] = snapshot
                subscription.push(snapshot)

    async def commit(self, operations: List[WriteOperation]) -> None:
        async with self._lock:
            touched = self._apply(operations)
            self._notify(touched)

    async def run_transaction(self, fn: TransactionFunction) -> Any:
        """Run ``fn`` while holding the store lock.

        ``fn`` must only use the transaction it is given; calling other write
        methods of this store from inside it would deadlock.
        """
        async with self._lock:
            transaction = Transaction(self.get)
            result = await fn(transaction)
            touched = self._apply(transaction.operations)
            self._notify(touched)
            return result

    def disconnect(self, error: Optional[Exception] = None) -> None:
        """Fail every live listener, as a dropped connection would."""
        error = error or StoreError("Store connection lost")
        for subscription in list(self._query_listeners) + list(self._document_listeners):
            subscription.fail(error)

__all__ = ['InMemoryStore']
