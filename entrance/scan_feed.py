"""
Entrance - Pluggable Scan Feed
==============================

Purpose
-------
Read scan tokens from a capture device at the front desk, suppress repeat
reads of the same card, then hand each token to the check-in pipeline
*either* in-process (`CheckInPipeline.scan`) *or* via HTTP POST to
`/checkin/scan` on the entrance server.

Sources (scanner.feed.source):
  * mock     : identity payloads for scanner.feed.mock_member_ids at intervals
  * serial   : scanners in USB-CDC/serial mode, one line per scan (pyserial)
  * keyboard : USB wedge scanners via a global keyboard hook (pynput)
  * camera   : OpenCV QR decoding, re-armed after each decode

Publishing modes (publisher.mode):
  * inprocess : build a pipeline from the same config and call it directly
  * http      : POST /checkin/scan with a small queue and retry/backoff

Resilience:
  * Device errors back off exponentially and retry
  * Malformed input is passed through; the pipeline records it as unparsable
  * Clean shutdown on Ctrl+C

CLI
---
    python -m entrance.scan_feed --config config/config.yaml
    --source mock|serial|keyboard|camera
    --mode inprocess|http
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .config_loader import get_log_level, get_publisher_cfg, get_scanner_cfg, load_config
from .keystroke import KeyboardCapture, PynputKeySource, threshold_for
from .optical import CameraError, OpticalScanSession
from .payload import make_identity_payload, recover_member_id


# ------------------------------------------------------------
# De-duplication
# ------------------------------------------------------------
class DedupWindow:
    """
    Suppress repeat reads within a sliding window. Keyed by the recovered
    member id when there is one (the same card yields the same id even if
    the scanner garbles it differently), else by the raw text.
    """
    def __init__(self, window_sec: float, clock=time.monotonic):
        self.window = float(window_sec)
        self._clock = clock
        self._last: Dict[str, float] = {}

    @staticmethod
    def key_for(token: str) -> str:
        rec = recover_member_id(token)
        return f"id:{rec.member_id}" if rec.ok else f"raw:{token.strip()}"

    def accept(self, token: str) -> bool:
        now = self._clock()
        key = self.key_for(token)
        last = self._last.get(key)
        if last is not None and now - last < self.window:
            return False
        self._last[key] = now
        return True


# ------------------------------------------------------------
# Publishers
# ------------------------------------------------------------
class Publisher:
    async def start(self):
        return

    async def stop(self):
        return

    async def publish(self, token: str):
        raise NotImplementedError


class InProcessPublisher(Publisher):
    """Runs tokens through a CheckInPipeline living in this process."""
    def __init__(self, pipeline):
        self.pipeline = pipeline

    async def publish(self, token: str):
        res = await self.pipeline.scan(token)
        logging.getLogger("scanner.pub").info(
            "published",
            extra={"publisher": "inprocess", "outcome": res.result.outcome.value, "log_id": res.log.id},
        )

    async def stop(self):
        await self.pipeline.aclose()


# POST /checkin/scan is not idempotent: only resend when the server cannot
# have run the check-in.
NOT_SENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)
RETRY_STATUSES = {502, 503, 504}


class HttpPublisher(Publisher):
    """
    Posts tokens to /checkin/scan with:
      - small queue to absorb bursts
      - retry with exponential backoff (cap 2s) when the scan never reached
        the server; read timeouts and 500s are dropped and counted
      - shared AsyncClient
    """
    def __init__(self, base_url: str, *, timeout_ms: int = 1500, max_queue: int = 64,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout_ms / 1000.0
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._queue: asyncio.Queue[str] = asyncio.Queue(maxsize=max_queue)
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()

        self.tokens_enqueued = 0
        self.tokens_sent = 0
        self.tokens_failed = 0

    async def start(self):
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout,
                                         transport=self._transport)
        self._task = asyncio.create_task(self._run_sender())

    async def stop(self):
        # let queued scans drain before closing
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._queue.join(), timeout=self.timeout * 2)
        self._stopping.set()
        if self._task:
            await self._task
        if self._client:
            await self._client.aclose()

    async def publish(self, token: str):
        try:
            self._queue.put_nowait(token)
        except asyncio.QueueFull:
            # drop oldest
            _ = self._queue.get_nowait()
            self._queue.task_done()
            self._queue.put_nowait(token)
        self.tokens_enqueued += 1

    async def _run_sender(self):
        assert self._client is not None
        log = logging.getLogger("scanner.pub")
        backoff = 0.1
        while not self._stopping.is_set():
            try:
                token = await asyncio.wait_for(self._queue.get(), timeout=0.25)
            except asyncio.TimeoutError:
                continue

            body: Dict[str, Any] = {}
            t0 = time.perf_counter()
            try:
                resp = await self._client.post("/checkin/scan", json={"token": token})
                if 200 <= resp.status_code < 300:
                    self.tokens_sent += 1
                    with contextlib.suppress(ValueError):
                        body = resp.json()
                    log.info(
                        "published",
                        extra={
                            "publisher": "http",
                            "status": resp.status_code,
                            "result_message": (body.get("result") or {}).get("message"),
                            "latency_ms": round((time.perf_counter() - t0) * 1000, 1),
                        },
                    )
                    backoff = 0.1
                    self._queue.task_done()
                    continue
                if 400 <= resp.status_code < 500:
                    # the server rejected the request itself; retrying won't help
                    self.tokens_failed += 1
                    log.warning("http_rejected", extra={"status": resp.status_code})
                    self._queue.task_done()
                    continue
                if resp.status_code not in RETRY_STATUSES:
                    # the server may already have logged the attempt
                    self.tokens_failed += 1
                    log.warning("http_server_error", extra={"status": resp.status_code})
                    self._queue.task_done()
                    continue
                log.warning("http_unavailable", extra={"status": resp.status_code})
            except NOT_SENT_ERRORS as e:
                log.warning("http_connect_failed", extra={"err": str(e)})
            except Exception as e:
                # sent but unanswered: a resend could log the same scan twice
                self.tokens_failed += 1
                log.warning("http_error_dropped", extra={"err": repr(e)})
                self._queue.task_done()
                continue
            self.tokens_failed += 1
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2.0, 2.0)
            # requeue before marking done so stop() keeps waiting for the retry
            await self.publish(token)
            self._queue.task_done()


# ------------------------------------------------------------
# Readers (async)
# ------------------------------------------------------------
class Reader(ABC):
    @abstractmethod
    def tokens(self) -> AsyncIterator[str]:
        """Async stream of scan tokens (one per scan)."""
        raise NotImplementedError

    async def close(self) -> None:
        return


class MockReader(Reader):
    def __init__(self, member_ids: List[int], period_s: float = 5.0):
        self.member_ids = list(member_ids) or [1]
        self.period_s = float(period_s)

    async def tokens(self) -> AsyncIterator[str]:
        i = 0
        while True:
            mid = self.member_ids[i % len(self.member_ids)]
            i += 1
            yield make_identity_payload(mid, name=f"Member {mid}", phone="")
            await asyncio.sleep(self.period_s)


class SerialScannerReader(Reader):
    """
    Scanners configured for USB-CDC / RS-232 output send one scan per line.
    Reconnects with exponential backoff on unplug or open failure.
    """
    def __init__(self, port: str, baud: int = 9600):
        self.port = port
        self.baud = baud
        self._log = logging.getLogger("scanner.serial")

    async def tokens(self) -> AsyncIterator[str]:
        backoff = 0.2
        while True:
            ser = None
            # Lazy import so the process can still run without pyserial
            try:
                import serial  # type: ignore
            except ImportError as e:
                self._log.error("pyserial_missing", extra={"hint": "pip install pyserial", "err": str(e)})
                await asyncio.sleep(1.0)
                continue

            self._log.info("open_serial", extra={"port": self.port, "baud": self.baud})
            try:
                ser = serial.Serial(self.port, self.baud, timeout=0.25)
                backoff = 0.2
                while True:
                    raw: bytes = await asyncio.to_thread(ser.readline)
                    if not raw:
                        continue
                    txt = raw.decode("utf-8", errors="replace").strip()
                    logging.getLogger("scanner.raw").debug("serial_line", extra={"raw": repr(raw)})
                    if txt:
                        yield txt
            except asyncio.CancelledError:
                self._log.info("serial_cancelled")
                raise
            except Exception as e:
                self._log.warning("serial_error", extra={"port": self.port, "err": str(e)})
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2.0, 5.0)
            finally:
                if ser is not None:
                    with contextlib.suppress(Exception):
                        ser.close()
                    self._log.info("serial_closed")


class KeyboardReader(Reader):
    """Global keyboard hook; tokens are framed by KeyboardCapture on the listener thread."""
    def __init__(self, reset_threshold_ms: int = 2000, source: Optional[PynputKeySource] = None):
        self.reset_threshold_ms = reset_threshold_ms
        self.source = source or PynputKeySource()
        self._capture: Optional[KeyboardCapture] = None

    async def tokens(self) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        q: asyncio.Queue[str] = asyncio.Queue()
        self._capture = KeyboardCapture(
            self.source,
            on_token=lambda t: loop.call_soon_threadsafe(q.put_nowait, t),
            reset_threshold_ms=self.reset_threshold_ms,
        )
        with self._capture:
            while True:
                yield await q.get()

    async def close(self) -> None:
        if self._capture is not None:
            self._capture.detach()


class CameraReader(Reader):
    """
    Single-shot optical session, re-armed `rearm_s` after each decode so the
    same member standing at the camera does not check in twice in a row.
    """
    def __init__(self, device: Any = 0, profile: str = "fast", rearm_s: float = 2.0,
                 allow_insecure_streams: bool = False, **session_kw: Any):
        self.rearm_s = float(rearm_s)
        self._log = logging.getLogger("scanner.camera")
        self._q: Optional[asyncio.Queue[str]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.session = OpticalScanSession(
            on_decoded=self._on_decoded, device=device, profile=profile,
            allow_insecure_streams=allow_insecure_streams, **session_kw,
        )

    def _on_decoded(self, text: str) -> None:
        if self._loop is not None and self._q is not None:
            self._loop.call_soon_threadsafe(self._q.put_nowait, text)

    async def tokens(self) -> AsyncIterator[str]:
        self._loop = asyncio.get_running_loop()
        self._q = asyncio.Queue()
        backoff = 0.5
        try:
            while True:
                try:
                    await asyncio.to_thread(self.session.start)
                    backoff = 0.5
                except CameraError as e:
                    self._log.warning("camera_unavailable", extra={"error": e.code, "fallback": e.fallback})
                    await asyncio.sleep(backoff)
                    backoff = min(backoff * 2.0, 10.0)
                    continue
                yield await self._q.get()
                await asyncio.sleep(self.rearm_s)
        finally:
            await asyncio.to_thread(self.session.stop)

    async def close(self) -> None:
        await asyncio.to_thread(self.session.stop)


# ------------------------------------------------------------
# Orchestrator
# ------------------------------------------------------------
def build_reader(source: str, sc: Dict[str, Any]) -> Reader:
    source = source.lower()
    feed = sc.get("feed", {}) or {}
    if source == "mock":
        return MockReader(feed.get("mock_member_ids") or [1, 2, 3], float(feed.get("mock_period_s", 5.0)))
    if source == "serial":
        serial_cfg = sc.get("serial", {}) or {}
        port = serial_cfg.get("port")
        if not port:
            raise ValueError("No serial port configured. Set scanner.serial.port")
        try:
            baud = int(serial_cfg.get("baud") or 9600)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid baud value: {serial_cfg.get('baud')!r}") from None
        return SerialScannerReader(str(port), baud)
    if source == "keyboard":
        kb = sc.get("keyboard", {}) or {}
        return KeyboardReader(threshold_for(kb.get("device"), kb))
    if source == "camera":
        cam = sc.get("camera", {}) or {}
        return CameraReader(
            device=cam.get("device", 0),
            profile=cam.get("profile", "fast"),
            rearm_s=float(cam.get("rearm_s", 2.0)),
            allow_insecure_streams=bool(cam.get("allow_insecure_streams", False)),
        )
    raise ValueError(f"Unknown scanner.feed.source: {source}")


def build_publisher(mode: str, cfg: Dict[str, Any]) -> Publisher:
    mode = mode.lower()
    if mode == "inprocess":
        from .db_schema import ensure_schema
        from .config_loader import get_db_path, get_storage_cfg
        from .pipeline import build_pipeline

        if str(get_storage_cfg(cfg).get("backend", "sqlite")).lower() == "sqlite":
            ensure_schema(get_db_path(cfg))
        return InProcessPublisher(build_pipeline(cfg))
    if mode == "http":
        http_cfg = get_publisher_cfg(cfg).get("http", {}) or {}
        return HttpPublisher(
            http_cfg.get("base_url", "http://127.0.0.1:8000"),
            timeout_ms=int(http_cfg.get("timeout_ms", 1500)),
        )
    raise ValueError(f"Unknown publisher.mode: {mode}")


class ScanFeedService:
    """Wires: Reader -> de-dup -> Publisher."""
    def __init__(self, cfg: Dict[str, Any], reader: Optional[Reader] = None,
                 publisher: Optional[Publisher] = None,
                 source: Optional[str] = None, mode: Optional[str] = None):
        self.cfg = cfg
        self.log = logging.getLogger("scanner")
        sc = get_scanner_cfg(cfg)
        feed = sc.get("feed", {}) or {}

        self.source = (source or str(feed.get("source", "mock"))).lower()
        self.mode = (mode or str(get_publisher_cfg(cfg).get("mode", "http"))).lower()
        self.dup_window_s = float(feed.get("duplicate_window_sec", 3))
        self._dups = DedupWindow(self.dup_window_s)

        self.reader = reader or build_reader(self.source, sc)
        self.publisher = publisher or build_publisher(self.mode, cfg)

        self.seen_total = 0
        self.published_total = 0
        self.suppressed_total = 0

    async def handle(self, token: str) -> bool:
        """One token through de-dup and publish. Returns True when published."""
        self.seen_total += 1
        if not self._dups.accept(token):
            self.suppressed_total += 1
            logging.getLogger("scanner.dedup").info("suppressed", extra={"window_s": self.dup_window_s})
            return False
        try:
            await self.publisher.publish(token)
        except Exception as e:
            logging.getLogger("scanner.pub").warning("publish_error", extra={"err": str(e)})
            return False
        self.published_total += 1
        return True

    async def run(self, stop_evt: asyncio.Event):
        await self.publisher.start()
        self.log.info("scan_feed_start", extra={"source": self.source, "mode": self.mode,
                                                "dup_window_s": self.dup_window_s})
        try:
            async for token in self.reader.tokens():
                if stop_evt.is_set():
                    break
                await self.handle(token)
        except asyncio.CancelledError:
            stop_evt.set()
            self.log.info("scan_feed_cancelled")
        except Exception:
            self.log.exception("scan_feed_crashed")
        finally:
            with contextlib.suppress(Exception):
                await self.reader.close()
            try:
                await self.publisher.stop()
            except Exception:
                self.log.exception("scan_feed_publisher_stop_failed")
            self.log.info(
                "scan_feed_stop",
                extra={"seen": self.seen_total, "published": self.published_total,
                       "suppressed": self.suppressed_total},
            )


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------
def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Entrance scan feed")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--source", choices=("mock", "serial", "keyboard", "camera"))
    ap.add_argument("--mode", choices=("inprocess", "http"))
    return ap.parse_args(argv)


async def _amain(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    cfg = load_config(args.config)

    logging.basicConfig(
        level=getattr(logging, get_log_level("INFO", cfg), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    stop_evt = asyncio.Event()
    svc = ScanFeedService(cfg, source=args.source, mode=args.mode)
    task = asyncio.create_task(svc.run(stop_evt))
    try:
        await task
    finally:
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(_amain())
