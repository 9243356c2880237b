"""
PostgREST-style stores against an httpx.MockTransport.

Tests verify lookups, inserts and filtered reads build the expected requests,
and that HTTP / transport failures surface as StoreUnavailableError so the
evaluator and audit logger fall back.
"""

import asyncio
import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from entrance.audit import AuditLogger
from entrance.authorize import AuthorizationEvaluator
from entrance.models import EntranceLogInput, EntranceType, Outcome, ValidationStatus
from entrance.rest_store import BASE_LOG_COLUMNS, RestEntranceLogStore, RestMemberStore, rest_stores_from_cfg
from entrance.stores import StoreUnavailableError

BASE = "https://gym.example.co"


def _members_handler(seen):
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        assert request.url.path == "/rest/v1/members"
        if request.url.params.get("id") == "eq.7":
            return httpx.Response(200, json=[{
                "id": 7, "name": "Maria", "phone": "6912345678",
                "status": "active", "expiry": "2030-01-01", "package": "Annual",
            }])
        return httpx.Response(200, json=[])
    return handler


def test_member_lookup():
    seen = []
    store = RestMemberStore(BASE, api_key="anon-key", transport=httpx.MockTransport(_members_handler(seen)))

    async def run():
        m = await store.get_member_by_id(7)
        assert m is not None and m.name == "Maria" and m.status == "active"
        assert await store.get_member_by_id(8) is None
        await store.aclose()

    asyncio.run(run())
    assert seen[0].headers["apikey"] == "anon-key"
    assert seen[0].headers["authorization"] == "Bearer anon-key"
    print("[OK] member lookup")


def test_member_lookup_failures():
    def http_500(request):
        return httpx.Response(500, json={"message": "boom"})

    def refused(request):
        raise httpx.ConnectError("connection refused", request=request)

    async def run():
        for handler in (http_500, refused):
            store = RestMemberStore(BASE, transport=httpx.MockTransport(handler))
            with pytest.raises(StoreUnavailableError):
                await store.get_member_by_id(1)
            r = await AuthorizationEvaluator(store).evaluate(1)
            assert r.outcome == Outcome.CONNECTION_ERROR
            await store.aclose()

    asyncio.run(run())


def test_log_insert_and_filters():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(201, json=[{**body, "id": 10, "timestamp": "2025-03-12T10:00:00+00:00"}])
        return httpx.Response(200, json=[{
            "id": 10, "member_id": 7, "member_name": "Maria", "member_phone": "",
            "validation_status": "invalid", "validation_message": "Expired Subscription",
            "entrance_type": "qr_scan", "timestamp": "2025-03-12T10:00:00Z",
        }])

    store = RestEntranceLogStore(BASE, transport=httpx.MockTransport(handler))

    async def run():
        log = await store.append(EntranceLogInput(
            member_id=7, member_name="Maria",
            validation_status=ValidationStatus.INVALID,
            validation_message="Expired Subscription",
            entrance_type=EntranceType.QR_SCAN,
            outcome=Outcome.EXPIRED,
        ))
        assert log.id == 10
        assert log.timestamp.year == 2025
        rows = await store.list_by_status(ValidationStatus.INVALID, limit=5)
        assert [r.id for r in rows] == [10]
        await store.aclose()

    asyncio.run(run())

    post, get = seen
    assert post.headers["prefer"] == "return=representation"
    posted = json.loads(post.content)
    assert set(posted) == set(BASE_LOG_COLUMNS)
    assert "outcome" not in posted and "raw_token" not in posted
    assert get.url.params["validation_status"] == "eq.invalid"
    assert get.url.params["order"] == "timestamp.desc"
    assert get.url.params["limit"] == "5"
    print("[OK] log insert and filters")


def test_audit_falls_back_when_rest_is_down():
    store = RestEntranceLogStore(BASE, transport=httpx.MockTransport(lambda r: httpx.Response(503)))
    audit = AuditLogger(store)

    async def run():
        log = await audit.append(EntranceLogInput(
            member_id=1, validation_status=ValidationStatus.VALID,
            validation_message="Active Subscription", entrance_type=EntranceType.MANUAL,
        ))
        assert log.id == 1
        assert audit.fallback_writes == 1
        assert [l.member_id for l in await audit.by_type(EntranceType.MANUAL)] == [1]
        assert audit.fallback_reads == 1
        await audit.aclose()

    asyncio.run(run())


def test_extra_columns_are_opt_in(monkeypatch):
    posted = []

    def handler(request):
        body = json.loads(request.content)
        posted.append(body)
        return httpx.Response(201, json=[{**body, "id": 1, "timestamp": "2026-10-18T10:00:00Z"}])

    monkeypatch.setenv("GYM_KEY", "k")
    _, logs = rest_stores_from_cfg({"base_url": BASE, "api_key_env": "GYM_KEY", "extra_columns": True})
    assert "outcome" in logs.columns
    logs = RestEntranceLogStore(BASE, transport=httpx.MockTransport(handler), extra_columns=True)

    async def run():
        await logs.append(EntranceLogInput(
            member_id=None, validation_status=ValidationStatus.INVALID,
            validation_message="Unrecognized Code", entrance_type=EntranceType.QR_SCAN,
            outcome=Outcome.UNPARSABLE, raw_token="garbage",
        ))
        await logs.aclose()

    asyncio.run(run())
    assert posted[0]["outcome"] == "unparsable"
    assert posted[0]["raw_token"] == "garbage"


def test_naive_and_created_at_timestamps_merge_with_fallback():
    """A failed insert fills the fallback; later durable reads must still merge."""
    calls = {"post": 0}

    def handler(request):
        if request.method == "POST":
            calls["post"] += 1
            return httpx.Response(503)
        return httpx.Response(200, json=[
            {"id": 11, "member_id": 7, "validation_status": "valid",
             "validation_message": "Active Subscription", "entrance_type": "qr_scan",
             "timestamp": "2000-01-02T10:00:00"},
            {"id": 10, "member_id": 7, "validation_status": "valid",
             "validation_message": "Active Subscription", "entrance_type": "qr_scan",
             "created_at": "2000-01-01T10:00:00+02:00"},
        ])

    audit = AuditLogger(RestEntranceLogStore(BASE, transport=httpx.MockTransport(handler)))

    async def run():
        cached = await audit.append(EntranceLogInput(
            member_id=7, validation_status=ValidationStatus.VALID,
            validation_message="Active Subscription", entrance_type=EntranceType.MANUAL,
        ))
        rows = await audit.recent()
        await audit.aclose()
        return cached, rows

    cached, rows = asyncio.run(run())
    assert calls["post"] == 1 and audit.fallback_writes == 1
    assert audit.fallback_reads == 0
    assert len(rows) == 3
    assert rows[0].timestamp == cached.timestamp
    assert [r.entrance_type for r in rows[1:]] == [EntranceType.QR_SCAN, EntranceType.QR_SCAN]
    assert all(r.timestamp.tzinfo is not None for r in rows)
    assert rows[2].timestamp.hour == 8  # +02:00 normalized to UTC
    print("[OK] naive / created_at timestamps")


def test_base_url_required():
    with pytest.raises(ValueError):
        RestMemberStore("")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
