"""
Camera QR session lifecycle with fake capture devices.

Tests verify:
1. Frames are cropped to the profile's centred detection region
2. The first decode is emitted once and the camera is released (single-shot)
3. Failed reads are counted and retried; undecodable frames are silent
4. stop() / switch_camera() release the device promptly
5. Device failures raise CameraError subclasses and leave the session restartable
6. Unencrypted network streams are refused unless allowed
"""

import sys
import threading
import time
from pathlib import Path

import numpy as np
import pytest

sys.path.insert(0, str(Path(__file__).parent))

from entrance.optical import (
    CameraBusyError,
    CameraError,
    CameraNotFoundError,
    InsecureContextError,
    OpticalScanSession,
    crop_center,
    get_profile,
)

PAYLOAD = '{"id":1,"memberId":1}'


def _blank():
    return np.zeros((480, 640, 3), dtype=np.uint8)


def _marked():
    f = _blank()
    f[240, 320, 0] = 255  # centre pixel, inside any detection region
    return f


class FakeCapture:
    def __init__(self, frames):
        self.frames = list(frames)
        self.released = False
        self.reads = 0

    def read(self):
        self.reads += 1
        if not self.frames:
            return True, _blank()
        f = self.frames.pop(0)
        if f is None:
            return False, None
        return True, f

    def release(self):
        self.released = True


class FakeDetector:
    def __init__(self):
        self.shapes = []

    def detectAndDecode(self, roi):
        self.shapes.append(roi.shape)
        return (PAYLOAD if roi.max() > 0 else ""), None, None


def _wait(pred, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pred():
            return True
        time.sleep(0.01)
    return pred()


def test_profiles():
    assert (get_profile(None).fps, get_profile(None).qrbox) == (10, 250)
    assert (get_profile("balanced").fps, get_profile("balanced").qrbox) == (8, 320)
    assert (get_profile("accurate").fps, get_profile("accurate").qrbox) == (5, 400)
    with pytest.raises(ValueError):
        get_profile("ultra")


def test_crop_center():
    assert crop_center(_blank(), 250).shape == (250, 250, 3)
    assert crop_center(np.zeros((100, 120), dtype=np.uint8), 250).shape == (100, 100)


def test_single_shot_decode_releases_camera():
    cap = FakeCapture([_blank(), None, _blank(), _marked(), _marked()])
    det = FakeDetector()
    got = []
    done = threading.Event()

    def on_decoded(text):
        got.append(text)
        done.set()

    s = OpticalScanSession(on_decoded, capture_factory=lambda d: cap, detector_factory=lambda: det)
    s.start()
    assert done.wait(5.0), "no decode within 5s"
    assert _wait(lambda: not s.is_running())

    assert got == [PAYLOAD]
    assert cap.released
    assert s.status()["status"] == "decoded"
    assert s.decoded == 1
    assert s.read_failures == 1
    assert det.shapes and all(shape == (250, 250, 3) for shape in det.shapes)
    print("[OK] single-shot decode")


def test_start_is_noop_while_running_and_stop_releases():
    opened = []

    def factory(device):
        cap = FakeCapture([])
        opened.append(cap)
        return cap

    s = OpticalScanSession(lambda t: None, capture_factory=factory, detector_factory=FakeDetector)
    s.start()
    s.start()
    assert len(opened) == 1
    assert s.is_running()

    s.stop()
    assert not s.is_running()
    assert opened[0].released
    assert s.status()["status"] == "stopped"


def test_switch_camera_releases_previous_device():
    opened = []

    def factory(device):
        cap = FakeCapture([])
        opened.append((device, cap))
        return cap

    with OpticalScanSession(lambda t: None, device=0, capture_factory=factory,
                            detector_factory=FakeDetector) as s:
        s.switch_camera(1)
        assert [d for d, _ in opened] == [0, 1]
        assert opened[0][1].released
        assert s.status()["device"] == 1
    assert opened[1][1].released
    print("[OK] switch camera")


def test_device_errors_are_restartable():
    attempts = {"n": 0}

    def factory(device):
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise CameraBusyError("in use")
        return FakeCapture([_marked()])

    got = []
    s = OpticalScanSession(got.append, capture_factory=factory, detector_factory=FakeDetector)
    with pytest.raises(CameraBusyError) as ei:
        s.start()
    assert ei.value.to_dict()["error"] == "camera_busy"
    assert ei.value.fallback
    assert not s.is_running()
    assert s.status()["last_error"] == "camera_busy"

    s.start()
    assert _wait(lambda: got == [PAYLOAD])
    s.stop()


def test_not_found_error_message():
    def factory(device):
        raise CameraNotFoundError("/dev/video9 does not exist")

    s = OpticalScanSession(lambda t: None, device=9, capture_factory=factory, detector_factory=FakeDetector)
    with pytest.raises(CameraNotFoundError) as ei:
        s.start()
    body = ei.value.to_dict()
    assert body["message"] == "No camera was found"
    assert "manual" in body["fallback"].lower()


def test_insecure_streams():
    opened = []

    def factory(device):
        opened.append(device)
        return FakeCapture([])

    s = OpticalScanSession(lambda t: None, device="http://10.0.0.5/stream",
                           capture_factory=factory, detector_factory=FakeDetector)
    with pytest.raises(InsecureContextError):
        s.start()
    assert opened == []

    for ok_device in ("http://127.0.0.1:8080/video", "rtsps://cam.local/live", 0):
        s = OpticalScanSession(lambda t: None, device=ok_device,
                               capture_factory=factory, detector_factory=FakeDetector)
        s.start()
        s.stop()

    s = OpticalScanSession(lambda t: None, device="rtsp://10.0.0.5/live", allow_insecure_streams=True,
                           capture_factory=factory, detector_factory=FakeDetector)
    s.start()
    s.stop()
    assert len(opened) == 4
    print("[OK] insecure streams")


if __name__ == "__main__":
    sys.exit(pytest.main([__file__, "-q"]))


@pytest.mark.parametrize("failure", [
    CameraNotFoundError("no decoder"),
    ImportError("No module named 'cv2'"),
])
def test_detector_failure_never_holds_the_device(failure):
    caps = []

    def factory(device):
        caps.append(FakeCapture([]))
        return caps[-1]

    def broken_detector():
        raise failure

    s = OpticalScanSession(lambda t: None, capture_factory=factory, detector_factory=broken_detector)
    with pytest.raises(CameraError) as ei:
        s.start()
    assert all(c.released for c in caps)
    assert not s.is_running()
    assert s.status()["status"] == "error"
    assert ei.value.to_dict()["fallback"]
