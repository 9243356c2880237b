"""
Member and entrance-log stores.

Two narrow contracts the check-in core depends on:

  MemberStore.get_member_by_id(id)     -> Member | None   (raises StoreUnavailableError)
  EntranceLogStore.append(entry)       -> EntranceLog
  EntranceLogStore.list_recent(limit)  -> [EntranceLog]   newest first
  EntranceLogStore.list_by_member / list_by_status / list_by_type

Implementations here: SQLite (aiosqlite, durable) and in-memory. The hosted
REST variants live in rest_store.py.
"""

from __future__ import annotations

import itertools
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, List, Optional

import aiosqlite

from .models import EntranceLog, EntranceLogInput, EntranceType, Member, ValidationStatus

UTC_MS = lambda: int(time.time() * 1000)


class StoreUnavailableError(RuntimeError):
    """The store could not be reached or the query could not be performed."""


def ms_to_datetime(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)


def datetime_to_ms(ts: datetime) -> int:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


# ----------------------------- Interfaces -----------------------------
class MemberStore(ABC):
    @abstractmethod
    async def get_member_by_id(self, member_id: int) -> Optional[Member]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return


class EntranceLogStore(ABC):
    @abstractmethod
    async def append(self, entry: EntranceLogInput) -> EntranceLog:
        raise NotImplementedError

    @abstractmethod
    async def list_recent(self, limit: int = 1000) -> List[EntranceLog]:
        raise NotImplementedError

    @abstractmethod
    async def list_by_member(self, member_id: int, limit: int = 100) -> List[EntranceLog]:
        raise NotImplementedError

    @abstractmethod
    async def list_by_status(self, status: ValidationStatus, limit: int = 100) -> List[EntranceLog]:
        raise NotImplementedError

    @abstractmethod
    async def list_by_type(self, entrance_type: EntranceType, limit: int = 100) -> List[EntranceLog]:
        raise NotImplementedError

    async def aclose(self) -> None:
        return


# ----------------------------- In-memory -----------------------------
class InMemoryMemberStore(MemberStore):
    def __init__(self, members: Iterable[Member] = ()):
        self._members: Dict[int, Member] = {m.id: m for m in members}

    def put(self, member: Member) -> None:
        self._members[member.id] = member

    async def get_member_by_id(self, member_id: int) -> Optional[Member]:
        m = self._members.get(int(member_id))
        return m.model_copy() if m is not None else None


class MemoryEntranceLogStore(EntranceLogStore):
    """
    Process-lifetime log list, most recent first. Assigns its own sequential
    ids. Contents are lost on restart.
    """
    def __init__(self, max_entries: Optional[int] = None, clock: Callable[[], int] = UTC_MS):
        self._logs: Deque[EntranceLog] = deque(maxlen=max_entries)
        self._ids = itertools.count(1)
        self._clock = clock
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._logs)

    async def append(self, entry: EntranceLogInput) -> EntranceLog:
        with self._lock:
            log = EntranceLog(
                id=next(self._ids),
                timestamp=ms_to_datetime(self._clock()),
                **entry.model_dump(),
            )
            self._logs.appendleft(log)
        return log

    def _select(self, pred: Callable[[EntranceLog], bool], limit: int) -> List[EntranceLog]:
        with self._lock:
            return list(itertools.islice((l for l in self._logs if pred(l)), max(0, int(limit))))

    async def list_recent(self, limit: int = 1000) -> List[EntranceLog]:
        return self._select(lambda l: True, limit)

    async def list_by_member(self, member_id: int, limit: int = 100) -> List[EntranceLog]:
        return self._select(lambda l: l.member_id == member_id, limit)

    async def list_by_status(self, status: ValidationStatus, limit: int = 100) -> List[EntranceLog]:
        return self._select(lambda l: l.validation_status == status, limit)

    async def list_by_type(self, entrance_type: EntranceType, limit: int = 100) -> List[EntranceLog]:
        return self._select(lambda l: l.entrance_type == entrance_type, limit)


# ----------------------------- SQLite -----------------------------
_MEMBER_COLS = "id, name, phone, email, status, expiry, package"
_LOG_COLS = (
    "id, member_id, member_name, member_phone, member_status, validation_status, "
    "validation_message, entrance_type, outcome, notes, raw_token, ts_ms"
)


def _row_to_member(r: aiosqlite.Row) -> Member:
    return Member(
        id=int(r["id"]),
        name=r["name"] or "",
        phone=r["phone"] or "",
        email=r["email"],
        status=str(r["status"] or ""),
        expiry=r["expiry"],
        package=r["package"],
    )


def _row_to_log(r: aiosqlite.Row) -> EntranceLog:
    return EntranceLog(
        id=int(r["id"]),
        member_id=int(r["member_id"]) if r["member_id"] is not None else None,
        member_name=r["member_name"] or "",
        member_phone=r["member_phone"] or "",
        member_status=r["member_status"],
        validation_status=r["validation_status"],
        validation_message=r["validation_message"],
        entrance_type=r["entrance_type"],
        outcome=r["outcome"],
        notes=r["notes"],
        raw_token=r["raw_token"],
        timestamp=ms_to_datetime(int(r["ts_ms"])),
    )


class SqliteMemberStore(MemberStore):
    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)

    async def get_member_by_id(self, member_id: int) -> Optional[Member]:
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(
                    f"SELECT {_MEMBER_COLS} FROM members WHERE id = ?", (int(member_id),)
                )
                row = await cur.fetchone()
                await cur.close()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"member lookup failed: {type(e).__name__}: {e}") from e
        return _row_to_member(row) if row else None


class SqliteEntranceLogStore(EntranceLogStore):
    def __init__(self, db_path: str | Path, clock: Callable[[], int] = UTC_MS):
        self.db_path = str(db_path)
        self._clock = clock

    async def append(self, entry: EntranceLogInput) -> EntranceLog:
        ts_ms = self._clock()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cur = await db.execute(
                    """
                    INSERT INTO entrance_logs (
                        member_id, member_name, member_phone, member_status,
                        validation_status, validation_message, entrance_type,
                        outcome, notes, raw_token, ts_ms
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        entry.member_id,
                        entry.member_name,
                        entry.member_phone,
                        entry.member_status,
                        entry.validation_status.value,
                        entry.validation_message,
                        entry.entrance_type.value,
                        entry.outcome.value if entry.outcome else None,
                        entry.notes,
                        entry.raw_token,
                        ts_ms,
                    ),
                )
                new_id = cur.lastrowid
                await cur.close()
                await db.commit()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"log append failed: {type(e).__name__}: {e}") from e
        return EntranceLog(id=int(new_id), timestamp=ms_to_datetime(ts_ms), **entry.model_dump())

    async def _query(self, where: str, params: tuple, limit: int) -> List[EntranceLog]:
        sql = (
            f"SELECT {_LOG_COLS} FROM entrance_logs {where} "
            "ORDER BY ts_ms DESC, id DESC LIMIT ?"
        )
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cur = await db.execute(sql, params + (max(0, int(limit)),))
                rows = await cur.fetchall()
                await cur.close()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"log query failed: {type(e).__name__}: {e}") from e
        return [_row_to_log(r) for r in rows]

    async def list_recent(self, limit: int = 1000) -> List[EntranceLog]:
        return await self._query("", (), limit)

    async def list_by_member(self, member_id: int, limit: int = 100) -> List[EntranceLog]:
        return await self._query("WHERE member_id = ?", (int(member_id),), limit)

    async def list_by_status(self, status: ValidationStatus, limit: int = 100) -> List[EntranceLog]:
        return await self._query("WHERE validation_status = ?", (ValidationStatus(status).value,), limit)

    async def list_by_type(self, entrance_type: EntranceType, limit: int = 100) -> List[EntranceLog]:
        return await self._query("WHERE entrance_type = ?", (EntranceType(entrance_type).value,), limit)
