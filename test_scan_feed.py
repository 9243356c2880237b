"""
Scan feed: reader -> de-dup -> publisher.

Tests verify:
1. Repeat reads of the same card inside the window are suppressed, keyed by
   the recovered member id rather than the exact text
2. The in-process publisher runs tokens through the pipeline
3. The HTTP publisher posts to /checkin/scan and only resends scans that
   never reached the server
4. Reader selection validates its configuration
"""

import asyncio
import json
import sys
import threading
from pathlib import Path
from typing import AsyncIterator, List

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from entrance.audit import AuditLogger
from entrance.authorize import AuthorizationEvaluator
from entrance.models import Member
from entrance.payload import make_identity_payload
from entrance.pipeline import CheckInPipeline
from entrance.scan_feed import (
    CameraReader,
    DedupWindow,
    HttpPublisher,
    InProcessPublisher,
    MockReader,
    Reader,
    ScanFeedService,
    SerialScannerReader,
    build_reader,
)
from entrance.stores import InMemoryMemberStore


class ListReader(Reader):
    def __init__(self, tokens: List[str]):
        self.items = list(tokens)

    async def tokens(self) -> AsyncIterator[str]:
        for t in self.items:
            yield t


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_dedup_window_keys_by_member_id():
    clock = FakeClock()
    d = DedupWindow(3.0, clock=clock)
    assert d.accept(make_identity_payload(1, timestamp_ms=1))
    # same card, different payload timestamp and a garbled layout
    assert not d.accept(make_identity_payload(1, timestamp_ms=2))
    assert not d.accept('{"ιδ"¨1}')
    assert d.accept(make_identity_payload(2))
    assert d.accept("garbage")
    assert not d.accept("garbage")
    clock.t = 3.5
    assert d.accept(make_identity_payload(1))
    print("[OK] dedup window")


def test_inprocess_feed_runs_pipeline():
    members = InMemoryMemberStore([Member(id=1, name="Maria", status="active")])
    pipe = CheckInPipeline(AuthorizationEvaluator(members), AuditLogger(None))
    cfg = {"app": {"storage": {"backend": "memory"}}, "scanner": {"feed": {"duplicate_window_sec": 60}}}
    tokens = [make_identity_payload(1), make_identity_payload(1), "junk", make_identity_payload(5)]
    svc = ScanFeedService(cfg, reader=ListReader(tokens), publisher=InProcessPublisher(pipe))

    async def run():
        await svc.run(asyncio.Event())
        return await pipe.audit.recent()

    logs = asyncio.run(run())
    assert svc.seen_total == 4
    assert svc.suppressed_total == 1
    assert svc.published_total == 3
    assert [l.validation_message for l in logs] == ["Invalid QR Code", "Unrecognized Code", "Active Subscription"]
    print("[OK] in-process feed")


def test_http_publisher_retries_server_errors():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        if len(calls) == 1:
            return httpx.Response(503)
        return httpx.Response(200, json={"result": {"message": "Active Subscription"}})

    async def run():
        pub = HttpPublisher("http://entrance.local", timeout_ms=2000, transport=httpx.MockTransport(handler))
        await pub.start()
        await pub.publish("tok-1")
        await pub.stop()
        return pub

    pub = asyncio.run(run())
    assert calls == [{"token": "tok-1"}, {"token": "tok-1"}]
    assert pub.tokens_sent == 1
    assert pub.tokens_failed == 1


def test_http_publisher_drops_client_errors():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(422, json={"detail": "bad"})

    async def run():
        pub = HttpPublisher("http://entrance.local", transport=httpx.MockTransport(handler))
        await pub.start()
        await pub.publish("tok")
        await pub.stop()
        return pub

    pub = asyncio.run(run())
    assert calls == ["/checkin/scan"]
    assert pub.tokens_failed == 1 and pub.tokens_sent == 0


def _run_publisher(handler):
    async def run():
        pub = HttpPublisher("http://entrance.local", timeout_ms=2000, transport=httpx.MockTransport(handler))
        await pub.start()
        await pub.publish(make_identity_payload(7, timestamp_ms=1))
        await pub.stop()
        return pub

    return asyncio.run(run())


@pytest.mark.parametrize("exc, status", [
    (httpx.ReadTimeout, None),
    (httpx.RemoteProtocolError, None),
    (None, 500),
])
def test_http_publisher_never_resends_a_processed_scan(exc, status):
    calls = []

    def handler(request):
        calls.append(request.content)
        if exc is not None:
            raise exc("no answer", request=request)
        return httpx.Response(status)

    pub = _run_publisher(handler)
    assert len(calls) == 1
    assert pub.tokens_sent == 0 and pub.tokens_failed == 1


def test_http_publisher_retries_connect_failures():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        if len(calls) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={})

    pub = _run_publisher(handler)
    assert calls == ["/checkin/scan", "/checkin/scan"]
    assert pub.tokens_sent == 1


class FakeSession:
    def __init__(self, reader):
        self.reader = reader
        self.threads = []

    def start(self):
        self.threads.append(threading.current_thread())
        self.reader._on_decoded(make_identity_payload(9))

    def stop(self):
        self.threads.append(threading.current_thread())


def test_camera_reader_keeps_blocking_calls_off_the_loop():
    reader = CameraReader(rearm_s=0)
    reader.session = FakeSession(reader)

    async def run():
        gen = reader.tokens()
        token = await gen.__anext__()
        await gen.aclose()
        return token

    token = asyncio.run(run())
    assert json.loads(token)["id"] == 9
    assert len(reader.session.threads) == 2
    assert all(t is not threading.main_thread() for t in reader.session.threads)


def test_build_reader():
    sc = {
        "feed": {"mock_member_ids": [4, 5], "mock_period_s": 0.5},
        "serial": {"port": "/dev/ttyACM0", "baud": 115200},
        "camera": {"device": 1, "profile": "accurate", "rearm_s": 1.0},
    }
    mock = build_reader("mock", sc)
    assert isinstance(mock, MockReader) and mock.member_ids == [4, 5]
    ser = build_reader("serial", sc)
    assert isinstance(ser, SerialScannerReader) and ser.baud == 115200
    cam = build_reader("camera", sc)
    assert isinstance(cam, CameraReader) and cam.session.profile.name == "accurate"

    with pytest.raises(ValueError):
        build_reader("serial", {})
    with pytest.raises(ValueError):
        build_reader("udp", sc)


def test_mock_reader_emits_identity_payloads():
    async def run():
        out = []
        async for t in MockReader([3], period_s=0).tokens():
            out.append(json.loads(t))
            if len(out) == 2:
                break
        return out

    out = asyncio.run(run())
    assert [o["id"] for o in out] == [3, 3]


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))
