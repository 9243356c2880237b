"""
Check-in pipeline: token -> member id -> decision -> audit record.

Every attempt that reaches scan() or manual() produces exactly one
EntranceLog, including unrecognizable codes and store outages. The most
recent result is kept for display and pushed to any waiting SSE listeners.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

from .audit import AuditLogger
from .authorize import AuthorizationEvaluator, connection_error, unrecognized_code
from .config_loader import get_checkin_cfg, get_db_path, get_storage_cfg
from .models import CheckInResult, EntranceType, Member
from .payload import MAX_MEMBER_ID, recover_member_id
from .stores import (
    EntranceLogStore,
    InMemoryMemberStore,
    MemberStore,
    MemoryEntranceLogStore,
    SqliteEntranceLogStore,
    SqliteMemberStore,
)

log = logging.getLogger("entrance.pipeline")


class CheckInPipeline:
    def __init__(self, evaluator: AuthorizationEvaluator, audit: AuditLogger):
        self.evaluator = evaluator
        self.audit = audit
        self.last_result: Optional[CheckInResult] = None
        self._listeners: List[asyncio.Queue[CheckInResult]] = []

    # ---------- result feed ----------
    def subscribe(self) -> asyncio.Queue[CheckInResult]:
        q: asyncio.Queue[CheckInResult] = asyncio.Queue()
        self._listeners.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue[CheckInResult]) -> None:
        if q in self._listeners:
            self._listeners.remove(q)

    def _publish(self, res: CheckInResult) -> None:
        self.last_result = res
        for q in list(self._listeners):
            q.put_nowait(res)

    # ---------- attempts ----------
    async def _authorize(self, member_id: int):
        try:
            return await self.evaluator.evaluate(member_id)
        except Exception as e:
            log.exception("authorize_failed", extra={"member_id": member_id})
            return connection_error(f"Error communicating with the database ({type(e).__name__})")

    async def scan(self, token: str, entrance_type: EntranceType = EntranceType.QR_SCAN) -> CheckInResult:
        """Run one scanned token through recovery, authorization and the audit log."""
        recovered = recover_member_id(token)
        if recovered.member_id is None:
            result = unrecognized_code()
        else:
            result = await self._authorize(recovered.member_id)

        entry = await self.audit.log_attempt(
            result,
            EntranceType(entrance_type),
            member_id=recovered.member_id,
            raw_token=token if isinstance(token, str) else str(token),
        )
        res = CheckInResult(
            result=result, log=entry, member_id=recovered.member_id, strategy=recovered.strategy
        )
        log.info(
            "checkin",
            extra={
                "member_id": recovered.member_id,
                "strategy": recovered.strategy,
                "outcome": result.outcome.value,
                "log_id": entry.id,
            },
        )
        self._publish(res)
        return res

    async def manual(self, member_id: Any) -> CheckInResult:
        """
        Operator-typed member id. Bypasses the payload parser. Anything that is
        not a positive integer raises ValueError and is not recorded.
        """
        if isinstance(member_id, bool) or not isinstance(member_id, int) or not 0 < member_id <= MAX_MEMBER_ID:
            raise ValueError(f"member id must be a positive integer, got {member_id!r}")

        result = await self._authorize(member_id)
        entry = await self.audit.log_attempt(result, EntranceType.MANUAL, member_id=member_id)
        res = CheckInResult(result=result, log=entry, member_id=member_id, strategy="manual")
        log.info("checkin_manual",
                 extra={"member_id": member_id, "outcome": result.outcome.value, "log_id": entry.id})
        self._publish(res)
        return res

    async def aclose(self) -> None:
        await self.audit.aclose()
        store = self.evaluator.member_store
        if store is not None:
            await store.aclose()


# ---------- wiring ----------
def build_stores(cfg: Dict[str, Any]) -> Tuple[Optional[MemberStore], Optional[EntranceLogStore]]:
    storage = get_storage_cfg(cfg)
    backend = str(storage.get("backend", "sqlite")).lower()
    if backend == "sqlite":
        db_path = get_db_path(cfg)
        return SqliteMemberStore(db_path), SqliteEntranceLogStore(db_path)
    if backend == "rest":
        from .rest_store import rest_stores_from_cfg
        return rest_stores_from_cfg(storage.get("rest", {}) or {})
    # memory: members seeded from config, no durable log store
    members = storage.get("members") or []
    return InMemoryMemberStore(Member(**m) for m in members), None


def build_pipeline(cfg: Dict[str, Any]) -> CheckInPipeline:
    members, logs = build_stores(cfg)
    checkin = get_checkin_cfg(cfg)
    audit = AuditLogger(
        durable=logs,
        fallback=MemoryEntranceLogStore(),
        recent_limit=int(checkin.get("recent_limit", 1000)),
        filtered_limit=int(checkin.get("filtered_limit", 100)),
        raw_token_max=int(checkin.get("raw_token_max", 512)),
    )
    return CheckInPipeline(AuthorizationEvaluator(members), audit)
