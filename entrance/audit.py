"""
Audit trail for check-in attempts.

Every attempt is appended to the durable store when one is configured and
reachable; otherwise the record goes to an in-memory fallback store so the
attempt is never lost for the lifetime of the process. Fallback use is
logged at WARNING and counted, and shows up at GET /audit/status.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .models import (
    EntranceLog,
    EntranceLogInput,
    EntranceType,
    ValidationResult,
    ValidationStatus,
)
from .stores import EntranceLogStore, MemoryEntranceLogStore, datetime_to_ms

log = logging.getLogger("entrance.audit")

RECENT_LIMIT = 1000
FILTERED_LIMIT = 100
RAW_TOKEN_MAX = 512


class AuditLogger:
    def __init__(
        self,
        durable: Optional[EntranceLogStore],
        fallback: Optional[MemoryEntranceLogStore] = None,
        recent_limit: int = RECENT_LIMIT,
        filtered_limit: int = FILTERED_LIMIT,
        raw_token_max: int = RAW_TOKEN_MAX,
    ):
        self.durable = durable
        self.fallback = fallback if fallback is not None else MemoryEntranceLogStore()
        self.recent_limit = int(recent_limit)
        self.filtered_limit = int(filtered_limit)
        self.raw_token_max = int(raw_token_max)
        self.fallback_writes = 0
        self.fallback_reads = 0
        self.last_error: Optional[str] = None

    # ---------- writes ----------
    async def append(self, entry: EntranceLogInput) -> EntranceLog:
        """Persist one record. Never raises."""
        if self.durable is not None:
            try:
                return await self.durable.append(entry)
            except Exception as e:
                self.last_error = f"{type(e).__name__}: {e}"
                log.warning(
                    "durable_append_failed; using in-memory fallback",
                    extra={"member_id": entry.member_id, "error": self.last_error},
                )
        else:
            log.warning("no durable log store; using in-memory fallback",
                        extra={"member_id": entry.member_id})
        self.fallback_writes += 1
        return await self.fallback.append(entry)

    async def log_attempt(
        self,
        result: ValidationResult,
        entrance_type: EntranceType,
        member_id: Optional[int] = None,
        raw_token: Optional[str] = None,
    ) -> EntranceLog:
        """Project a decision into an EntranceLog record and append it."""
        member = result.member
        entry = EntranceLogInput(
            member_id=member.id if member is not None else member_id,
            member_name=member.name if member is not None else "",
            member_phone=member.phone if member is not None else "",
            member_status=member.status if member is not None else None,
            validation_status=result.validation_status,
            validation_message=result.message,
            entrance_type=EntranceType(entrance_type),
            notes=result.reason,
            outcome=result.outcome,
            raw_token=raw_token[: self.raw_token_max] if raw_token is not None else None,
        )
        return await self.append(entry)

    # ---------- reads ----------
    async def _read(
        self,
        name: str,
        query: Callable[[EntranceLogStore], Awaitable[List[EntranceLog]]],
        limit: int,
    ) -> List[EntranceLog]:
        cached = await query(self.fallback)
        if self.durable is None:
            return cached[:limit]
        try:
            rows = await query(self.durable)
        except Exception as e:
            self.fallback_reads += 1
            self.last_error = f"{type(e).__name__}: {e}"
            log.warning("durable_read_failed; serving in-memory fallback",
                        extra={"query": name, "error": self.last_error})
            return cached[:limit]
        if not cached:
            return rows
        merged = sorted(rows + cached, key=lambda l: datetime_to_ms(l.timestamp), reverse=True)
        return merged[:limit]

    async def recent(self, limit: Optional[int] = None) -> List[EntranceLog]:
        n = self.recent_limit if limit is None else int(limit)
        return await self._read("recent", lambda s: s.list_recent(n), n)

    async def for_member(self, member_id: int, limit: Optional[int] = None) -> List[EntranceLog]:
        n = self.filtered_limit if limit is None else int(limit)
        return await self._read("member", lambda s: s.list_by_member(member_id, n), n)

    async def by_status(self, status: ValidationStatus, limit: Optional[int] = None) -> List[EntranceLog]:
        n = self.filtered_limit if limit is None else int(limit)
        st = ValidationStatus(status)
        return await self._read("status", lambda s: s.list_by_status(st, n), n)

    async def by_type(self, entrance_type: EntranceType, limit: Optional[int] = None) -> List[EntranceLog]:
        n = self.filtered_limit if limit is None else int(limit)
        et = EntranceType(entrance_type)
        return await self._read("type", lambda s: s.list_by_type(et, n), n)

    def status(self) -> Dict[str, Any]:
        return {
            "durable": type(self.durable).__name__ if self.durable is not None else None,
            "fallback_entries": len(self.fallback),
            "fallback_writes": self.fallback_writes,
            "fallback_reads": self.fallback_reads,
            "last_error": self.last_error,
        }

    async def aclose(self) -> None:
        if self.durable is not None:
            await self.durable.aclose()
