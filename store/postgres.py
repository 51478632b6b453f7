"""PostgreSQL implementation of the remote store.

Documents live in the ``documents`` table as JSONB. Writes go through a single
database transaction per commit; client transactions run at SERIALIZABLE
isolation and are retried on serialization failures. Live listeners share one
connection subscribed to the ``document_changes`` channel and re-run their
query whenever a document of their collection changes.
"""

import asyncio
import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import asyncpg
import backoff

from . import (
    RemoteStore,
    Subscription,
    Query,
    Direction,
    DocumentRef,
    DocumentSnapshot,
    QuerySnapshot,
    Transaction,
    TransactionFunction,
    WriteOperation,
    apply_updates,
    StoreError,
    DocumentNotFoundError,
    TransactionConflictError
)
from .documents import format_timestamp

logger = logging.getLogger(__name__)

CHANNEL = 'document_changes'

RETRYABLE_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError
)

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")

def encode_document(data: Any) -> str:
    """Encode a document or field value as JSON text for a jsonb parameter."""
    return json.dumps(data, default=_json_default)

def decode_document(raw: Union[str, bytes, Dict[str, Any], None]) -> Optional[Dict[str, Any]]:
    """Decode a jsonb column value returned by asyncpg."""
    if raw is None:
        return None
    if isinstance(raw, dict):
        return raw
    return json.loads(raw)

def parse_notification(payload: str) -> DocumentRef:
    """Turn a ``collection:id`` notification payload into a reference."""
    collection, sep, doc_id = payload.partition(':')
    if not sep or not collection or not doc_id:
        raise ValueError(f"Malformed change notification: {payload!r}")
    return DocumentRef(collection, doc_id)

def build_select(query: Query) -> Tuple[str, List[Any]]:
    """Render a query as SQL over the documents table.

    Field names are always passed as parameters, never interpolated.

    Returns:
        Tuple of (sql, args)
    """
    args: List[Any] = [query.collection]
    clauses = ['collection = $1']

    for f in query.filters:
        args.append(f.field)
        key = f"${len(args)}"
        if f.op == '==':
            args.append(encode_document(f.value))
            clauses.append(f"data -> {key}::text = ${len(args)}::jsonb")
        else:
            args.append([encode_document(v) for v in f.value])
            clauses.append(f"data -> {key}::text = ANY(${len(args)}::jsonb[])")

    sql = f"SELECT id, data FROM documents WHERE {' AND '.join(clauses)}"

    if query.ordering:
        field_name, direction = query.ordering
        args.append(field_name)
        if direction is Direction.DESCENDING:
            order = 'DESC NULLS LAST'
        else:
            order = 'ASC NULLS FIRST'
        sql += f" ORDER BY data -> ${len(args)}::text {order}, created_at"
    else:
        sql += " ORDER BY created_at"

    if query.max_results is not None:
        args.append(query.max_results)
        sql += f" LIMIT ${len(args)}"

    return sql, args

class PostgresStore(RemoteStore):
    """Remote store backed by the PostgreSQL ``documents`` table."""

    def __init__(self, pool: Optional[asyncpg.Pool] = None,
                 poll_interval: Optional[float] = None,
                 max_attempts: Optional[int] = None):
        """Initialize the store.

        Args:
            pool: Optional connection pool, defaults to ``database.get_pool()``
            poll_interval: Seconds between forced listener refreshes, 0 disables
            max_attempts: Attempts before a conflicting transaction fails
        """
        from config import settings_conf

        self.pool = pool
        self.poll_interval = (
            settings_conf['listener_poll_interval'] if poll_interval is None else poll_interval
        )
        self.max_attempts = (
            settings_conf['transaction_max_attempts'] if max_attempts is None else max_attempts
        )
        self._query_listeners: Dict[Subscription, List[Any]] = {}
        self._document_listeners: Dict[Subscription, List[Any]] = {}
        self._changes: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._listen_conn: Optional[asyncpg.Connection] = None

    async def ensure_pool(self) -> asyncpg.Pool:
        """Ensure we have a database pool."""
        if not self.pool:
            from database import get_pool
            self.pool = await get_pool()
        return self.pool

    # Reads

    async def _fetch(self, conn, ref: DocumentRef, for_update: bool = False) -> DocumentSnapshot:
        sql = 'SELECT data FROM documents WHERE collection = $1 AND id = $2'
        if for_update:
            sql += ' FOR UPDATE'
        raw = await conn.fetchval(sql, ref.collection, ref.id)
        return DocumentSnapshot(ref, decode_document(raw))

    async def _fetch_query(self, conn, query: Query) -> QuerySnapshot:
        sql, args = build_select(query)
        rows = await conn.fetch(sql, *args)
        return QuerySnapshot(query, tuple(
            DocumentSnapshot(DocumentRef(query.collection, row['id']), decode_document(row['data']))
            for row in rows
        ))

    async def get(self, ref: DocumentRef) -> DocumentSnapshot:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            return await self._fetch(conn, ref)

    async def query(self, query: Query) -> QuerySnapshot:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            return await self._fetch_query(conn, query)

    # Writes

    async def _write(self, conn, operations: List[WriteOperation]) -> None:
        for op in operations:
            ref = op.ref
            if op.kind == 'set':
                await conn.execute(
                    '''
                    INSERT INTO documents (collection, id, data)
                    VALUES ($1, $2, $3::jsonb)
                    ON CONFLICT (collection, id)
                    DO UPDATE SET data = EXCLUDED.data, updated_at = now()
                    ''',
                    ref.collection, ref.id, encode_document(op.data)
                )
            elif op.kind == 'update':
                current = await self._fetch(conn, ref, for_update=True)
                if not current.exists:
                    raise DocumentNotFoundError(f"No document to update: {ref.path}")
                await conn.execute(
                    '''
                    UPDATE documents SET data = $3::jsonb, updated_at = now()
                    WHERE collection = $1 AND id = $2
                    ''',
                    ref.collection, ref.id, encode_document(apply_updates(current.data, op.data))
                )
            elif op.kind == 'delete':
                await conn.execute(
                    'DELETE FROM documents WHERE collection = $1 AND id = $2',
                    ref.collection, ref.id
                )
            else:
                raise StoreError(f"Unknown write operation: {op.kind}")

    async def commit(self, operations: List[WriteOperation]) -> None:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await self._write(conn, operations)

    async def run_transaction(self, fn: TransactionFunction) -> Any:
        pool = await self.ensure_pool()

        @backoff.on_exception(backoff.expo, RETRYABLE_ERRORS, max_tries=self.max_attempts)
        async def attempt():
            async with pool.acquire() as conn:
                async with conn.transaction(isolation='serializable'):
                    transaction = Transaction(
                        lambda ref: self._fetch(conn, ref, for_update=True)
                    )
                    result = await fn(transaction)
                    await self._write(conn, transaction.operations)
                    return result

        try:
            return await attempt()
        except RETRYABLE_ERRORS as e:
            logger.error(f"Transaction failed after {self.max_attempts} attempts: {e}")
            raise TransactionConflictError(f"Transaction could not be applied: {e}")

    # Listeners

    def _remove_listener(self, subscription: Subscription) -> None:
        self._query_listeners.pop(subscription, None)
        self._document_listeners.pop(subscription, None)

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._changes = asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch())

    def subscribe_query(self, query: Query) -> Subscription:
        subscription = Subscription(f"query on {query.collection}", on_close=self._remove_listener)
        self._query_listeners[subscription] = [query, None]
        self._ensure_dispatcher()
        self._changes.put_nowait(subscription)
        return subscription

    def subscribe_document(self, ref: DocumentRef) -> Subscription:
        subscription = Subscription(f"document {ref.path}", on_close=self._remove_listener)
        self._document_listeners[subscription] = [ref, None]
        self._ensure_dispatcher()
        self._changes.put_nowait(subscription)
        return subscription

    def _on_notify(self, connection, pid, channel, payload) -> None:
        try:
            ref = parse_notification(payload)
        except ValueError as e:
            logger.warning(str(e))
            return
        if self._changes is not None:
            self._changes.put_nowait(ref)

    def _on_terminate(self, connection) -> None:
        logger.warning("Listener connection terminated")
        self._listen_conn = None
        self._fail_listeners(StoreError("Listener connection lost"))

    def _fail_listeners(self, error: Exception) -> None:
        for subscription in list(self._query_listeners) + list(self._document_listeners):
            subscription.fail(error)

    async def _listen(self) -> None:
        pool = await self.ensure_pool()
        conn = await pool.acquire()
        try:
            await conn.add_listener(CHANNEL, self._on_notify)
            conn.add_termination_listener(self._on_terminate)
        except Exception:
            await pool.release(conn)
            raise
        self._listen_conn = conn
        logger.info(f"Listening for changes on {CHANNEL}")

    async def _next_changes(self) -> Tuple[Set[str], Set[DocumentRef], Set[Subscription], bool]:
        """Wait for changes and drain everything already queued."""
        timeout = self.poll_interval or None
        collections: Set[str] = set()
        refs: Set[DocumentRef] = set()
        fresh: Set[Subscription] = set()
        try:
            items = [await asyncio.wait_for(self._changes.get(), timeout)]
        except asyncio.TimeoutError:
            return collections, refs, fresh, True
        while not self._changes.empty():
            items.append(self._changes.get_nowait())
        for item in items:
            if isinstance(item, Subscription):
                fresh.add(item)
            else:
                collections.add(item.collection)
                refs.add(item)
        return collections, refs, fresh, False

    async def _refresh(self, collections: Set[str], refs: Set[DocumentRef],
                       fresh: Set[Subscription], everything: bool) -> None:
        pool = await self.ensure_pool()
        async with pool.acquire() as conn:
            for subscription, state in list(self._query_listeners.items()):
                query, last = state
                if not (everything or subscription in fresh or query.collection in collections):
                    continue
                snapshot = await self._fetch_query(conn, query)
                if last is None or snapshot.documents != last.documents:
                    state[1] = snapshot
                    subscription.push(snapshot)

            for subscription, state in list(self._document_listeners.items()):
                ref, last = state
                if not (everything or subscription in fresh or ref in refs):
                    continue
                snapshot = await self._fetch(conn, ref)
                if last is None or snapshot != last:
                    state[1] = snapshot
                    subscription.push(snapshot)

    async def _dispatch(self) -> None:
        try:
            while True:
                if self._listen_conn is None:
                    await self._listen()
                collections, refs, fresh, everything = await self._next_changes()
                await self._refresh(collections, refs, fresh, everything)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Listener dispatch failed: {e}")
            self._fail_listeners(StoreError(f"Listener failed: {e}"))

    async def close(self) -> None:
        """Stop the dispatcher and release the listener connection."""
        for subscription in list(self._query_listeners) + list(self._document_listeners):
            subscription.close()
        if self._dispatcher:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass
            self._dispatcher = None
        if self._listen_conn is not None:
            conn, self._listen_conn = self._listen_conn, None
            await conn.remove_listener(CHANNEL, self._on_notify)
            await self.pool.release(conn)

__all__ = [
    'PostgresStore',
    'build_select',
    'encode_document',
    'decode_document',
    'parse_notification'
]
