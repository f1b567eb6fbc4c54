"""Signal record storage used by the relay server.

Every log implementation enforces the same rules:

* Writing an `answer` first removes every pending record of that session.
* Reading is read-and-remove. Records are scanned most-recent-first and once
  an `answer` has been seen, older `offer` records are neither returned nor
  removed during that read.
"""
from __future__ import annotations

import asyncio
import datetime
import json
import logging
import pathlib
from typing import Any
from typing import Iterable
from typing import Protocol
from typing import runtime_checkable

import aiosqlite

from signalbox.messages import MessageType
from signalbox.messages import SignalRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class SignalLog(Protocol):
    """Relay storage protocol for signal records."""

    async def append(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> SignalRecord:
        """Append a record to the log.

        If the message is an answer, all existing records of the session are
        removed first.

        Args:
            session_name: Name of the signaling session.
            sender_id: Identifier of the writer.
            message: JSON object payload.

        Returns:
            The stored record.
        """
        ...

    async def take(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Remove and return records addressed to a recipient.

        Args:
            session_name: Name of the signaling session.
            recipient_id: Identifier of the reader. Records written by the
                reader are skipped.

        Returns:
            Records, most-recent-first.
        """
        ...

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session."""
        ...

    async def delete(self, session_name: str, sender_id: str) -> int:
        """Delete all records of a sender in a session.

        Returns:
            Number of records deleted.
        """
        ...

    async def close(self) -> None:
        """Close the log."""
        ...


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


def _select_for_take(
    rows: Iterable[tuple[Any, str, dict[str, Any] | None]],
    recipient_id: str,
) -> list[Any]:
    """Return the keys of rows to deliver in a read pass.

    Args:
        rows: Tuples of `(key, sender_id, message)` for one session ordered
            most-recent-first. `message` is `None` if the stored payload
            could not be decoded.
        recipient_id: Identifier of the reader.
    """
    answer_seen = False
    selected = []
    for key, sender_id, message in rows:
        if message is None:
            continue
        message_type = message.get('type')
        if message_type == MessageType.answer.value:
            answer_seen = True
        if sender_id == recipient_id:
            continue
        if answer_seen and message_type == MessageType.offer.value:
            continue
        selected.append(key)
    return selected


class MemorySignalLog:
    """In-memory signal log.

    Records do not survive the process.
    """

    def __init__(self) -> None:
        self._records: list[SignalRecord] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def records(self, session_name: str | None = None) -> list[SignalRecord]:
        """Snapshot of pending records, oldest first."""
        return [
            record
            for record in self._records
            if session_name is None or record.session_name == session_name
        ]

    async def append(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> SignalRecord:
        """Append a record to the log."""
        record = SignalRecord(
            session_name=session_name,
            sender_id=sender_id,
            message=message,
            timestamp=_now(),
        )
        async with self._lock:
            if message.get('type') == MessageType.answer.value:
                self._records = [
                    r for r in self._records if r.session_name != session_name
                ]
            self._records.append(record)
        return record

    async def take(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Remove and return records addressed to a recipient."""
        async with self._lock:
            rows = [
                (index, record.sender_id, record.message)
                for index, record in reversed(list(enumerate(self._records)))
                if record.session_name == session_name
            ]
            selected = set(_select_for_take(rows, recipient_id))
            taken = [
                self._records[index]
                for index in sorted(selected, reverse=True)
            ]
            self._records = [
                record
                for index, record in enumerate(self._records)
                if index not in selected
            ]
        return taken

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session."""
        async with self._lock:
            return any(
                record.session_name == session_name
                and record.sender_id != recipient_id
                and record.message_type == MessageType.offer.value
                for record in self._records
            )

    async def delete(self, session_name: str, sender_id: str) -> int:
        """Delete all records of a sender in a session."""
        async with self._lock:
            before = len(self._records)
            self._records = [
                record
                for record in self._records
                if not (
                    record.session_name == session_name
                    and record.sender_id == sender_id
                )
            ]
            return before - len(self._records)

    async def close(self) -> None:
        """Clear all pending records."""
        self._records.clear()


class SQLiteSignalLog:
    """SQLite signal log.

    Args:
        database_path: Path to database file. Pending records persist across
            relay restarts unless `':memory:'` is used.
    """

    def __init__(self, database_path: str | pathlib.Path = ':memory:') -> None:
        if database_path == ':memory:':
            self.database_path = database_path
        else:
            path = pathlib.Path(database_path).expanduser().resolve()
            self.database_path = str(path)

        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def db(self) -> aiosqlite.Connection:
        """Get the database connection object."""
        if self._db is None:
            self._db = await aiosqlite.connect(self.database_path)
            await self._db.execute(
                'CREATE TABLE IF NOT EXISTS records ('
                'id INTEGER PRIMARY KEY AUTOINCREMENT, '
                'session_name TEXT NOT NULL, '
                'sender_id TEXT NOT NULL, '
                'message TEXT NOT NULL, '
                'timestamp TEXT NOT NULL)',
            )
            await self._db.execute(
                'CREATE INDEX IF NOT EXISTS records_session '
                'ON records (session_name)',
            )
            await self._db.commit()
        return self._db

    async def append(
        self,
        session_name: str,
        sender_id: str,
        message: dict[str, Any],
    ) -> SignalRecord:
        """Append a record to the log."""
        record = SignalRecord(
            session_name=session_name,
            sender_id=sender_id,
            message=message,
            timestamp=_now(),
        )
        async with self._lock:
            db = await self.db()
            if message.get('type') == MessageType.answer.value:
                await db.execute(
                    'DELETE FROM records WHERE session_name=?',
                    (session_name,),
                )
            await db.execute(
                'INSERT INTO records '
                '(session_name, sender_id, message, timestamp) '
                'VALUES (?, ?, ?, ?)',
                (
                    session_name,
                    sender_id,
                    json.dumps(message),
                    record.timestamp,
                ),
            )
            await db.commit()
        return record

    async def take(
        self,
        session_name: str,
        recipient_id: str,
    ) -> list[SignalRecord]:
        """Remove and return records addressed to a recipient."""
        async with self._lock:
            db = await self.db()
            async with db.execute(
                'SELECT id, sender_id, message, timestamp FROM records '
                'WHERE session_name=? ORDER BY id DESC',
                (session_name,),
            ) as cursor:
                rows = await cursor.fetchall()

            decoded: dict[int, SignalRecord] = {}
            scanned = []
            for row_id, sender_id, message_str, timestamp in rows:
                try:
                    message = json.loads(message_str)
                except json.JSONDecodeError:
                    logger.warning(
                        f'Skipping undecodable record {row_id} in session '
                        f'{session_name}',
                    )
                    message = None
                if not isinstance(message, dict):
                    message = None
                else:
                    decoded[row_id] = SignalRecord(
                        session_name=session_name,
                        sender_id=sender_id,
                        message=message,
                        timestamp=timestamp,
                    )
                scanned.append((row_id, sender_id, message))

            selected = _select_for_take(scanned, recipient_id)
            if len(selected) > 0:
                await db.executemany(
                    'DELETE FROM records WHERE id=?',
                    [(row_id,) for row_id in selected],
                )
                await db.commit()
        return [decoded[row_id] for row_id in selected]

    async def is_offering(self, session_name: str, recipient_id: str) -> bool:
        """Check if another sender has a pending offer in the session."""
        async with self._lock:
            db = await self.db()
            async with db.execute(
                'SELECT message FROM records '
                'WHERE session_name=? AND sender_id!=?',
                (session_name, recipient_id),
            ) as cursor:
                rows = await cursor.fetchall()

        for (message_str,) in rows:
            try:
                message = json.loads(message_str)
            except json.JSONDecodeError:
                continue
            if (
                isinstance(message, dict)
                and message.get('type') == MessageType.offer.value
            ):
                return True
        return False

    async def delete(self, session_name: str, sender_id: str) -> int:
        """Delete all records of a sender in a session."""
        async with self._lock:
            db = await self.db()
            cursor = await db.execute(
                'DELETE FROM records WHERE session_name=? AND sender_id=?',
                (session_name, sender_id),
            )
            await db.commit()
            return cursor.rowcount

    async def close(self) -> None:
        """Close the database connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None
