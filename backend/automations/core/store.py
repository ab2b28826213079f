"""Async key/value store backed by the StoredValue table.

Values are arbitrary JSON. Every read-modify-write of a key goes through
``update()``, which holds a per-key lock for the whole sequence so that the
tick loop and completion handling cannot drop each other's writes.
"""

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from automations.models.store import StoredValue

logger = logging.getLogger(__name__)

AUTOMATIONS_KEY = "automations"


def runs_key(automation_id: str) -> str:
    return f"runs:{automation_id}"


class PersistentStore:
    def __init__(self, engine: Engine):
        self._engine = engine
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def read(self, key: str) -> Any:
        """Return the stored value, or None when the key is absent."""
        with Session(self._engine) as session:
            row = session.get(StoredValue, key)
            return row.value if row else None

    async def write(self, key: str, value: Any) -> None:
        with Session(self._engine) as session:
            row = session.get(StoredValue, key)
            if row is None:
                row = StoredValue(key=key, value=value)
            else:
                row.value = value
                row.updated_at = datetime.now(timezone.utc)
            session.add(row)
            session.commit()

    async def delete(self, key: str) -> None:
        with Session(self._engine) as session:
            row = session.get(StoredValue, key)
            if row:
                session.delete(row)
                session.commit()

    async def keys(self) -> list[str]:
        with Session(self._engine) as session:
            return list(session.exec(select(StoredValue.key)).all())

    @asynccontextmanager
    async def locked(self, key: str) -> AsyncIterator[None]:
        async with self._locks[key]:
            yield

    async def update(
        self,
        key: str,
        mutate: Callable[[Any], Any] | Callable[[Any], Awaitable[Any]],
    ) -> Any:
        """Read ``key``, pass the value to ``mutate`` and write back its result.

        Runs under the key's lock. ``mutate`` may be sync or async and returns
        the new value; returning the ``UNCHANGED`` sentinel skips the write.
        """
        async with self.locked(key):
            current = await self.read(key)
            new_value = mutate(current)
            if asyncio.iscoroutine(new_value):
                new_value = await new_value
            if new_value is UNCHANGED:
                return current
            await self.write(key, new_value)
            return new_value


class _Unchanged:
    def __repr__(self) -> str:
        return "UNCHANGED"


UNCHANGED: Any = _Unchanged()
