"""
USB wedge scanners present themselves as keyboards: a scan arrives as a burst
of key events ending with Enter. This module separates those bursts from
human typing.

  KeystrokeFramer  - buffer + gap timer, emits one token per Enter
  FocusKeeper      - keeps the capture target focused unless the operator
                     deliberately moved to a text field
  KeyboardCapture  - explicit attach/detach of a key source to one framer

Key sources:
  PynputKeySource  - global keyboard hook on the front-desk PC (pynput)
  ManualKeySource  - events pushed by code, e.g. forwarded by the browser UI
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger("scanner.keyboard")

DEFAULT_RESET_THRESHOLD_MS = 2000
DEFAULT_REFOCUS_DELAY_MS = 100

TARGET_CAPTURE = "capture"
TARGET_TEXT_INPUT = "text_input"
TARGET_OTHER = "other"

ENTER = "Enter"


@dataclass
class KeyEvent:
    key: str
    ctrl: bool = False
    meta: bool = False
    alt: bool = False
    target: str = TARGET_CAPTURE
    ts: Optional[float] = None  # ms; client-supplied when forwarded from a browser


def threshold_for(device: Optional[str], keyboard_cfg: Dict[str, Any]) -> int:
    """Reset threshold (ms) for a device name, falling back to the global value."""
    per_device = keyboard_cfg.get("device_thresholds") or {}
    if device and device in per_device:
        return int(per_device[device])
    return int(keyboard_cfg.get("reset_threshold_ms", DEFAULT_RESET_THRESHOLD_MS))


class KeystrokeFramer:
    def __init__(
        self,
        reset_threshold_ms: int = DEFAULT_RESET_THRESHOLD_MS,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self.reset_threshold_ms = reset_threshold_ms
        self._clock = clock
        self._buf: List[str] = []
        self._last_ms: Optional[float] = None
        self.discarded = 0

    @property
    def buffer(self) -> str:
        return "".join(self._buf)

    def reset(self) -> None:
        self._buf.clear()
        self._last_ms = None

    def feed(self, ev: KeyEvent) -> Optional[str]:
        """Consume one key event; returns a complete token on Enter, else None."""
        if ev.ctrl or ev.meta or ev.alt:
            return None
        if ev.target == TARGET_TEXT_INPUT:
            return None

        if ev.key == ENTER:
            token = self.buffer.strip()
            self.reset()
            return token or None
        if len(ev.key) != 1:
            return None

        now = ev.ts if ev.ts is not None else self._clock()
        if self._buf and self._last_ms is not None and now - self._last_ms > self.reset_threshold_ms:
            self.discarded += 1
            log.debug("stale_buffer_discarded", extra={"chars": len(self._buf)})
            self._buf.clear()
        self._buf.append(ev.key)
        self._last_ms = now
        return None


class FocusKeeper:
    """
    Refocus the capture target after a non-deliberate blur. `refocus` is the
    callable that actually moves focus; `tick()` fires it once the delay has
    passed, so callers can drive it from any loop (or a timer).
    """

    def __init__(
        self,
        refocus: Callable[[], None],
        delay_ms: int = DEFAULT_REFOCUS_DELAY_MS,
        clock: Callable[[], float] = lambda: time.monotonic() * 1000.0,
    ):
        self._refocus = refocus
        self.delay_ms = delay_ms
        self._clock = clock
        self._due_ms: Optional[float] = None

    @property
    def pending(self) -> bool:
        return self._due_ms is not None

    def due_in_ms(self) -> Optional[float]:
        """Milliseconds until the scheduled refocus, None when nothing is scheduled."""
        if self._due_ms is None:
            return None
        return max(0.0, self._due_ms - self._clock())

    def on_blur(self, new_target: str) -> None:
        if new_target == TARGET_TEXT_INPUT:
            self._due_ms = None
            return
        self._due_ms = self._clock() + self.delay_ms

    def on_focus(self) -> None:
        self._due_ms = None

    def tick(self) -> bool:
        if self._due_ms is None or self._clock() < self._due_ms:
            return False
        self._due_ms = None
        self._refocus()
        return True


# ---------- key sources ----------
class KeySource:
    """Fan-out of key events to subscribers."""

    def __init__(self) -> None:
        self._subs: List[Callable[[KeyEvent], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, fn: Callable[[KeyEvent], None]) -> None:
        with self._lock:
            first = not self._subs
            self._subs.append(fn)
        if first:
            self._open()

    def unsubscribe(self, fn: Callable[[KeyEvent], None]) -> None:
        with self._lock:
            if fn in self._subs:
                self._subs.remove(fn)
            last = not self._subs
        if last:
            self._close()

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)

    def emit(self, ev: KeyEvent) -> None:
        with self._lock:
            subs = list(self._subs)
        for fn in subs:
            fn(ev)

    def _open(self) -> None:
        pass

    def _close(self) -> None:
        pass


class ManualKeySource(KeySource):
    def push(self, key: str, **kw: Any) -> None:
        self.emit(KeyEvent(key=key, **kw))


class PynputKeySource(KeySource):
    """Global keyboard hook. The listener thread exists only while subscribed."""

    def __init__(self) -> None:
        super().__init__()
        self._listener = None
        self._mods = {"ctrl": False, "meta": False, "alt": False}

    def _modifier(self, key: Any) -> Optional[str]:
        from pynput import keyboard

        k = keyboard.Key
        if key in (k.ctrl, k.ctrl_l, k.ctrl_r):
            return "ctrl"
        if key in (k.cmd, k.cmd_l, k.cmd_r):
            return "meta"
        if key in (k.alt, k.alt_l, k.alt_r, k.alt_gr):
            return "alt"
        return None

    def _on_press(self, key: Any) -> None:
        from pynput import keyboard

        mod = self._modifier(key)
        if mod:
            self._mods[mod] = True
            return
        if key == keyboard.Key.enter:
            name = ENTER
        else:
            name = getattr(key, "char", None) or str(key)
        self.emit(KeyEvent(key=name, **self._mods))

    def _on_release(self, key: Any) -> None:
        mod = self._modifier(key)
        if mod:
            self._mods[mod] = False

    def _open(self) -> None:
        from pynput import keyboard

        self._listener = keyboard.Listener(on_press=self._on_press, on_release=self._on_release)
        self._listener.start()
        log.info("pynput listener started")

    def _close(self) -> None:
        if self._listener is not None:
            self._listener.stop()
            self._listener = None
            log.info("pynput listener stopped")


class KeyboardCapture:
    """
    One framer subscribed to one key source. attach()/detach() are explicit and
    idempotent; use as a context manager to scope the subscription.
    """

    def __init__(
        self,
        source: KeySource,
        on_token: Callable[[str], None],
        reset_threshold_ms: int = DEFAULT_RESET_THRESHOLD_MS,
        refocus: Optional[Callable[[], None]] = None,
        refocus_delay_ms: int = DEFAULT_REFOCUS_DELAY_MS,
    ):
        self.source = source
        self.on_token = on_token
        self.framer = KeystrokeFramer(reset_threshold_ms)
        self.focus = FocusKeeper(refocus or (lambda: None), refocus_delay_ms)
        self.attached = False
        self.tokens = 0

    def _handle(self, ev: KeyEvent) -> None:
        token = self.framer.feed(ev)
        if token:
            self.tokens += 1
            log.info("token_framed", extra={"length": len(token)})
            self.on_token(token)

    def attach(self) -> "KeyboardCapture":
        if not self.attached:
            self.source.subscribe(self._handle)
            self.attached = True
        return self

    def detach(self) -> None:
        if self.attached:
            self.source.unsubscribe(self._handle)
            self.attached = False
            self.framer.reset()

    def __enter__(self) -> "KeyboardCapture":
        return self.attach()

    def __exit__(self, *exc: Any) -> None:
        self.detach()
