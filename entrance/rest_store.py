"""
Hosted database stores over a PostgREST-style HTTP API (Supabase and friends).

  GET  {base}/rest/v1/members?select=*&id=eq.7&limit=1
  POST {base}/rest/v1/entrance_logs            (Prefer: return=representation)
  GET  {base}/rest/v1/entrance_logs?order=timestamp.desc&limit=100&member_id=eq.7

Any transport failure or non-2xx answer becomes StoreUnavailableError so the
evaluator and the audit logger can apply their fallbacks.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from .models import EntranceLog, EntranceLogInput, EntranceType, Member, ValidationStatus
from .stores import EntranceLogStore, MemberStore, StoreUnavailableError

log = logging.getLogger("entrance.rest")


class _RestClient:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_ms: int = 3000,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise ValueError("REST store needs a base_url")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1",
            headers=headers,
            timeout=timeout_ms / 1000.0,
            transport=transport,
        )

    async def request(self, method: str, path: str, **kw: Any) -> Any:
        try:
            r = await self.client.request(method, path, **kw)
        except httpx.HTTPError as e:
            raise StoreUnavailableError(f"{method} {path}: {type(e).__name__}: {e}") from e
        if r.status_code // 100 != 2:
            log.warning("rest_error", extra={"path": path, "status": r.status_code})
            raise StoreUnavailableError(f"{method} {path}: HTTP {r.status_code}")
        try:
            return r.json() if r.content else None
        except ValueError as e:
            raise StoreUnavailableError(f"{method} {path}: response is not JSON") from e

    async def aclose(self) -> None:
        await self.client.aclose()


def _row_to_member(row: Dict[str, Any]) -> Member:
    return Member(
        id=int(row["id"]),
        name=row.get("name") or "",
        phone=row.get("phone") or "",
        email=row.get("email"),
        status=str(row.get("status") or ""),
        expiry=row.get("expiry"),
        package=row.get("package"),
    )


# Columns of the hosted entrance_logs table. outcome and raw_token are only
# posted when the table has been extended with them (extra_columns: true).
BASE_LOG_COLUMNS = (
    "member_id", "member_name", "member_phone", "member_status",
    "validation_status", "validation_message", "entrance_type", "notes",
)
EXTRA_LOG_COLUMNS = ("outcome", "raw_token")


def _parse_ts(row: Dict[str, Any]) -> datetime:
    """Row timestamp as an aware UTC datetime; naive values are taken as UTC."""
    raw = row.get("timestamp") or row.get("created_at")
    if not raw:
        return datetime.now(timezone.utc)
    ts = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _row_to_log(row: Dict[str, Any]) -> EntranceLog:
    return EntranceLog(
        id=int(row["id"]),
        member_id=row.get("member_id"),
        member_name=row.get("member_name") or "",
        member_phone=row.get("member_phone") or "",
        member_status=row.get("member_status"),
        validation_status=row["validation_status"],
        validation_message=row.get("validation_message") or "",
        entrance_type=row["entrance_type"],
        outcome=row.get("outcome"),
        notes=row.get("notes"),
        raw_token=row.get("raw_token"),
        timestamp=_parse_ts(row),
    )


class RestMemberStore(MemberStore):
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_ms: int = 3000,
                 table: str = "members", transport: Optional[httpx.AsyncBaseTransport] = None):
        self._rest = _RestClient(base_url, api_key, timeout_ms, transport)
        self.table = table

    async def get_member_by_id(self, member_id: int) -> Optional[Member]:
        rows = await self._rest.request(
            "GET", f"/{self.table}",
            params={"select": "*", "id": f"eq.{int(member_id)}", "limit": "1"},
        )
        if not rows:
            return None
        try:
            return _row_to_member(rows[0])
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailableError(f"malformed member row: {e}") from e

    async def aclose(self) -> None:
        await self._rest.aclose()


class RestEntranceLogStore(EntranceLogStore):
    def __init__(self, base_url: str, api_key: Optional[str] = None, timeout_ms: int = 3000,
                 table: str = "entrance_logs", transport: Optional[httpx.AsyncBaseTransport] = None,
                 extra_columns: bool = False):
        self._rest = _RestClient(base_url, api_key, timeout_ms, transport)
        self.table = table
        self.columns = BASE_LOG_COLUMNS + (EXTRA_LOG_COLUMNS if extra_columns else ())

    async def append(self, entry: EntranceLogInput) -> EntranceLog:
        rows = await self._rest.request(
            "POST", f"/{self.table}",
            json=entry.model_dump(mode="json", include=set(self.columns)),
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise StoreUnavailableError("insert returned no row")
        return _row_to_log(rows[0])

    async def _select(self, filters: Dict[str, str], limit: int) -> List[EntranceLog]:
        params = {"select": "*", "order": "timestamp.desc", "limit": str(max(0, int(limit)))}
        params.update(filters)
        rows = await self._rest.request("GET", f"/{self.table}", params=params)
        try:
            return [_row_to_log(r) for r in rows or []]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreUnavailableError(f"malformed log row: {e}") from e

    async def list_recent(self, limit: int = 1000) -> List[EntranceLog]:
        return await self._select({}, limit)

    async def list_by_member(self, member_id: int, limit: int = 100) -> List[EntranceLog]:
        return await self._select({"member_id": f"eq.{int(member_id)}"}, limit)

    async def list_by_status(self, status: ValidationStatus, limit: int = 100) -> List[EntranceLog]:
        return await self._select({"validation_status": f"eq.{ValidationStatus(status).value}"}, limit)

    async def list_by_type(self, entrance_type: EntranceType, limit: int = 100) -> List[EntranceLog]:
        return await self._select({"entrance_type": f"eq.{EntranceType(entrance_type).value}"}, limit)

    async def aclose(self) -> None:
        await self._rest.aclose()


def rest_stores_from_cfg(rest_cfg: Dict[str, Any]) -> tuple[RestMemberStore, RestEntranceLogStore]:
    """Build both REST stores from app.storage.rest; the key is read from the env."""
    base_url = str(rest_cfg.get("base_url") or "")
    key = os.environ.get(str(rest_cfg.get("api_key_env") or "ENTRANCE_REST_KEY"))
    timeout_ms = int(rest_cfg.get("timeout_ms", 3000))
    return (
        RestMemberStore(base_url, key, timeout_ms, table=rest_cfg.get("members_table", "members")),
        RestEntranceLogStore(
            base_url, key, timeout_ms,
            table=rest_cfg.get("logs_table", "entrance_logs"),
            extra_columns=bool(rest_cfg.get("extra_columns", False)),
        ),
    )
