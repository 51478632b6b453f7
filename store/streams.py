"""Helpers for consuming and combining live streams.

A stream is any async iterator: a ``Subscription`` or an async generator
built on top of one. Closing a stream releases its listeners.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, List, Tuple

from . import StoreError

logger = logging.getLogger(__name__)

_MISSING = object()
_DONE = object()

async def close_stream(stream: Any) -> None:
    """Close a stream, releasing the listeners behind it."""
    if hasattr(stream, 'aclose'):
        await stream.aclose()
    elif hasattr(stream, 'close'):
        stream.close()

async def first(stream: AsyncIterator[Any]) -> Any:
    """Return the first value of a stream and close it.

    Raises:
        StoreError: If the stream ends without producing a value
    """
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        raise StoreError("Stream ended before producing a value")
    finally:
        await close_stream(stream)

async def combine_latest(*streams: AsyncIterator[Any]) -> AsyncIterator[Tuple[Any, ...]]:
    """Emit a tuple of the latest value of every stream.

    Nothing is emitted until each stream has produced at least one value.
    An error from any stream ends the combined stream with that error. The
    combined stream ends when all inputs have ended.
    """
    queue: asyncio.Queue = asyncio.Queue()
    latest: List[Any] = [_MISSING] * len(streams)

    async def pump(index: int, stream: AsyncIterator[Any]) -> None:
        try:
            async for value in stream:
                await queue.put((index, value, None))
            await queue.put((index, _DONE, None))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await queue.put((index, None, e))
        finally:
            await close_stream(stream)

    tasks = [asyncio.create_task(pump(i, s)) for i, s in enumerate(streams)]
    finished = 0
    try:
        while finished < len(streams):
            index, value, error = await queue.get()
            if error is not None:
                raise error
            if value is _DONE:
                finished += 1
                continue
            latest[index] = value
            if all(v is not _MISSING for v in latest):
                yield tuple(latest)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

__all__ = ['first', 'combine_latest', 'close_stream']
