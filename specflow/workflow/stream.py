"""Resumable output streams.

A stream is an append-only sequence of JSON chunks persisted under a
stream id. Any process can read it from an arbitrary offset: readers get
the persisted chunks first and then tail live chunks until the stream is
closed, at which point iteration ends cleanly.

Writers are positional so that a workflow re-executed from the top does
not duplicate output: writing a chunk equal to the one already persisted
at the writer's position is treated as a replay and skipped.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import defaultdict
from typing import Any, AsyncIterator

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import col, select

from specflow.database.models import StreamChunk, StreamRecord, utcnow
from specflow.database.session import Database


logger = logging.getLogger(__name__)


class _Notifier:
    """Wakes local readers when a stream they follow changes."""

    def __init__(self) -> None:
        self._events: dict[str, asyncio.Event] = defaultdict(asyncio.Event)

    def notify(self, stream_id: str) -> None:
        event = self._events.pop(stream_id, None)
        if event is not None:
            event.set()

    async def wait(self, stream_id: str, timeout: float) -> None:
        event = self._events[stream_id]
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass


class StreamStore:
    """Durable storage and live tailing for output streams."""

    def __init__(self, database: Database, poll_interval: float = 0.5):
        self.database = database
        self.poll_interval = poll_interval
        self._notifier = _Notifier()

    async def create(self, stream_id: str) -> None:
        """Create a stream record if it does not exist yet."""
        async with self.database.session() as db:
            if await db.get(StreamRecord, stream_id) is None:
                db.add(StreamRecord(stream_id=stream_id))

    async def length(self, stream_id: str) -> int:
        async with self.database.session() as db:
            result = await db.execute(
                select(func.count()).select_from(StreamChunk).where(col(StreamChunk.stream_id) == stream_id)
            )
            return int(result.scalar() or 0)

    async def chunk_at(self, stream_id: str, position: int) -> dict[str, Any] | None:
        async with self.database.session() as db:
            result = await db.execute(
                select(StreamChunk.payload)
                .where(col(StreamChunk.stream_id) == stream_id)
                .where(col(StreamChunk.position) == position)
            )
            return result.scalars().first()

    async def read(self, stream_id: str, start: int = 0, limit: int = 500) -> list[dict[str, Any]]:
        """Persisted chunks from ``start`` (inclusive), in order."""
        async with self.database.session() as db:
            result = await db.execute(
                select(StreamChunk.payload)
                .where(col(StreamChunk.stream_id) == stream_id)
                .where(col(StreamChunk.position) >= start)
                .order_by(col(StreamChunk.position))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def append(self, stream_id: str, position: int, chunk: dict[str, Any]) -> None:
        """Persist ``chunk`` at ``position``; raises IntegrityError if taken."""
        async with self.database.session() as db:
            db.add(StreamChunk(stream_id=stream_id, position=position, payload=chunk))
        self._notifier.notify(stream_id)

    async def close(self, stream_id: str) -> None:
        async with self.database.session() as db:
            record = await db.get(StreamRecord, stream_id)
            if record is None:
                record = StreamRecord(stream_id=stream_id)
            if not record.closed:
                record.closed = True
                record.closed_at = utcnow()
                db.add(record)
        self._notifier.notify(stream_id)

    async def reopen(self, stream_id: str) -> None:
        """Mark a stream live again (a resumed run keeps writing to it)."""
        async with self.database.session() as db:
            record = await db.get(StreamRecord, stream_id)
            if record is not None and record.closed:
                record.closed = False
                record.closed_at = None
                db.add(record)

    async def is_closed(self, stream_id: str) -> bool:
        async with self.database.session() as db:
            record = await db.get(StreamRecord, stream_id)
            return record is None or record.closed

    async def subscribe(self, stream_id: str, start_index: int = 0) -> AsyncIterator[dict[str, Any]]:
        """Yield chunks from ``start_index`` and keep tailing until the stream closes.

        A negative ``start_index`` counts back from the current end.
        """
        position = start_index
        if position < 0:
            position = max(await self.length(stream_id) + position, 0)

        while True:
            # Read closure before chunks so a close racing the read is not missed
            closed = await self.is_closed(stream_id)
            chunks = await self.read(stream_id, start=position)
            for chunk in chunks:
                yield chunk
            position += len(chunks)
            if chunks:
                continue
            if closed:
                return
            await self._notifier.wait(stream_id, timeout=self.poll_interval)

    def writer(self, stream_id: str) -> StreamWriter:
        return StreamWriter(self, stream_id)


class StreamWriter:
    """Positional, replay-aware writer for one stream."""

    def __init__(self, store: StreamStore, stream_id: str):
        self.store = store
        self.stream_id = stream_id
        self.position = 0
        self._persisted: int | None = None

    async def _persisted_length(self) -> int:
        if self._persisted is None:
            self._persisted = await self.store.length(self.stream_id)
        return self._persisted

    def seek(self, position: int) -> None:
        """Fast-forward to where a replayed step left the stream."""
        self.position = position

    async def ahead(self) -> list[dict[str, Any]]:
        """Chunks an interrupted attempt already published past ``position``."""
        if self.position >= await self._persisted_length():
            return []
        return await self.store.read(self.stream_id, start=self.position)

    async def write(self, chunk: dict[str, Any]) -> int:
        """Write ``chunk``; returns the position it occupies in the stream."""
        chunk = json.loads(json.dumps(chunk))
        persisted = await self._persisted_length()

        if self.position < persisted:
            existing = await self.store.chunk_at(self.stream_id, self.position)
            if existing == chunk:
                self.position += 1
                return self.position - 1
            # Output diverged from the previous attempt; published chunks stay.
            self.position = persisted

        position = max(self.position, persisted)
        try:
            await self.store.append(self.stream_id, position, chunk)
        except IntegrityError:
            self._persisted = None
            raise
        self._persisted = position + 1
        self.position = position + 1
        return position
