"""
Camera QR decoding session.

A session owns one capture device while it runs. Frames are read at the
profile's rate, cropped to a centred square detection region and handed to
OpenCV's QRCodeDetector. The first decoded string goes to `on_decoded`, after
which the session stops and releases the camera (single-shot); call start()
again to arm it for the next member.

A frame that does not decode is the normal case and is not reported.

OpenCV is imported lazily by the default factories so the rest of the service
(and the test suite) runs on hosts without a camera stack.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlparse

log = logging.getLogger("scanner.camera")

Device = Union[int, str]

FALLBACK_HINT = "Use manual entry or the USB keyboard scanner"


# ---------- errors ----------
class CameraError(RuntimeError):
    code = "camera_error"
    user_message = "The camera could not be started"

    def __init__(self, detail: str = "", fallback: str = FALLBACK_HINT):
        super().__init__(detail or self.user_message)
        self.detail = detail
        self.fallback = fallback

    def to_dict(self) -> Dict[str, str]:
        return {"error": self.code, "message": self.user_message, "fallback": self.fallback}


class CameraNotFoundError(CameraError):
    code = "camera_not_found"
    user_message = "No camera was found"


class CameraBusyError(CameraError):
    code = "camera_busy"
    user_message = "The camera is being used by another application"


class CameraPermissionError(CameraError):
    code = "camera_permission_denied"
    user_message = "Permission to use the camera was denied"


class InsecureContextError(CameraError):
    code = "insecure_context"
    user_message = "Camera streams require an encrypted (HTTPS/RTSPS) connection"


# ---------- profiles ----------
@dataclass(frozen=True)
class QualityProfile:
    name: str
    fps: int
    qrbox: int  # side of the square detection region, px


PROFILES: Dict[str, QualityProfile] = {
    "fast": QualityProfile("fast", 10, 250),
    "balanced": QualityProfile("balanced", 8, 320),
    "accurate": QualityProfile("accurate", 5, 400),
}
DEFAULT_PROFILE = "fast"


def get_profile(name: Optional[str]) -> QualityProfile:
    try:
        return PROFILES[(name or DEFAULT_PROFILE).lower()]
    except KeyError:
        raise ValueError(f"unknown camera profile {name!r}; expected one of {', '.join(PROFILES)}")


_SECURE_SCHEMES = {"https", "rtsps", "file"}
_LOOPBACK = {"localhost", "127.0.0.1", "::1"}


def check_stream_security(device: Device, allow_insecure: bool = False) -> None:
    """Network streams must be encrypted unless they stay on this host."""
    if isinstance(device, int) or allow_insecure:
        return
    s = str(device)
    if s.isdigit() or s.startswith("/dev/"):
        return
    u = urlparse(s)
    if not u.scheme or u.scheme in _SECURE_SCHEMES:
        return
    if (u.hostname or "") in _LOOPBACK:
        return
    raise InsecureContextError(f"refusing unencrypted stream {u.scheme}://{u.hostname}")


# ---------- default OpenCV factories ----------
def _device_node(device: Device) -> Optional[str]:
    if isinstance(device, int):
        return f"/dev/video{device}"
    if str(device).startswith("/dev/"):
        return str(device)
    return None


def open_cv2_capture(device: Device) -> Any:
    import cv2

    node = _device_node(device)
    if node and os.name == "posix" and os.path.isdir("/dev"):
        if not os.path.exists(node):
            raise CameraNotFoundError(f"{node} does not exist")
        if not os.access(node, os.R_OK):
            raise CameraPermissionError(f"no read access to {node}")

    cap = cv2.VideoCapture(device)
    if not cap.isOpened():
        cap.release()
        if node and os.path.exists(node):
            raise CameraBusyError(f"{node} exists but could not be opened")
        raise CameraNotFoundError(f"could not open camera {device!r}")
    return cap


def make_cv2_detector() -> Any:
    import cv2

    return cv2.QRCodeDetector()


def crop_center(frame: Any, side: int) -> Any:
    h, w = frame.shape[:2]
    side = min(int(side), h, w)
    top = (h - side) // 2
    left = (w - side) // 2
    return frame[top:top + side, left:left + side]


# ---------- session ----------
class OpticalScanSession:
    def __init__(
        self,
        on_decoded: Callable[[str], None],
        device: Device = 0,
        profile: str = DEFAULT_PROFILE,
        allow_insecure_streams: bool = False,
        capture_factory: Callable[[Device], Any] = open_cv2_capture,
        detector_factory: Callable[[], Any] = make_cv2_detector,
    ):
        self.on_decoded = on_decoded
        self.device = device
        self.profile = get_profile(profile)
        self.allow_insecure_streams = allow_insecure_streams
        self._capture_factory = capture_factory
        self._detector_factory = detector_factory

        self._t: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._status = "idle"
        self.decoded = 0
        self.read_failures = 0
        self.last_error: Optional[str] = None

    # ---- lifecycle ----
    def start(self) -> None:
        """Acquire the camera and start decoding. No-op while already running."""
        with self._lock:
            if self._t and self._t.is_alive():
                return
            try:
                check_stream_security(self.device, self.allow_insecure_streams)
                # detector first: a failure here must not strand an open device
                detector = self._acquire(self._detector_factory)
                cap = self._acquire(self._capture_factory, self.device)
            except CameraError as e:
                self._status = "error"
                self.last_error = e.code
                log.warning("camera_start_failed", extra={"device": self.device, "error": e.code})
                raise
            self._stop.clear()
            self._status = "scanning"
            self.last_error = None
            self._t = threading.Thread(
                target=self._run_loop, args=(cap, detector),
                name=f"OpticalScan[{self.device}]", daemon=True,
            )
            self._t.start()
            log.info("camera_started", extra={"device": self.device, "profile": self.profile.name})

    @staticmethod
    def _acquire(factory: Callable[..., Any], *args: Any) -> Any:
        try:
            return factory(*args)
        except CameraError:
            raise
        except Exception as e:
            # missing cv2, driver faults and the like
            raise CameraError(f"{type(e).__name__}: {e}") from e

    def stop(self) -> None:
        self._stop.set()
        t = self._t
        if t and t.is_alive() and t is not threading.current_thread():
            t.join(timeout=2.0)
        if self._status == "scanning":
            self._status = "stopped"

    def switch_camera(self, device: Device) -> None:
        """Release the current device and start on another one."""
        self.stop()
        self.device = device
        self.start()

    def is_running(self) -> bool:
        return bool(self._t and self._t.is_alive())

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running(),
            "status": self._status,
            "device": self.device,
            "profile": self.profile.name,
            "fps": self.profile.fps,
            "qrbox": self.profile.qrbox,
            "decoded": self.decoded,
            "read_failures": self.read_failures,
            "last_error": self.last_error,
        }

    def __enter__(self) -> "OpticalScanSession":
        self.start()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.stop()

    # ---- decode loop ----
    def _decode(self, detector: Any, frame: Any) -> Optional[str]:
        try:
            data, _points, _straight = detector.detectAndDecode(crop_center(frame, self.profile.qrbox))
        except Exception:
            # decoder hiccup on a bad frame
            return None
        return data or None

    def _run_loop(self, cap: Any, detector: Any) -> None:
        interval = 1.0 / max(1, self.profile.fps)
        try:
            while not self._stop.is_set():
                started = time.monotonic()
                ok, frame = cap.read()
                if not ok or frame is None:
                    self.read_failures += 1
                else:
                    text = self._decode(detector, frame)
                    if text:
                        self.decoded += 1
                        self._status = "decoded"
                        self._stop.set()
                        log.info("qr_decoded", extra={"device": self.device, "length": len(text)})
                        try:
                            self.on_decoded(text)
                        except Exception:
                            log.exception("on_decoded callback failed")
                        break
                self._stop.wait(max(0.0, interval - (time.monotonic() - started)))
        finally:
            cap.release()
            log.debug("camera_released", extra={"device": self.device})
