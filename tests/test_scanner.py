from types import SimpleNamespace

import pytest

from bmm_portal.exceptions import (
    CameraNotFoundException,
    CameraPermissionException,
    CameraUnavailableException,
    DecoderInitException,
    NoCodeFoundException,
)
from bmm_portal.scanner import (
    TOO_SHORT_MESSAGE,
    CameraScanner,
    KeystrokeScanner,
    classify_camera_error,
    decode_image,
)
from bmm_portal.suppression import ScanSuppressor


def symbols(*texts):
    return [SimpleNamespace(data=text.encode("utf-8")) for text in texts]


class FakeCapture:
    def __init__(self, frames, opened=True):
        self.frames = list(frames)
        self.opened = opened
        self.released = False

    def isOpened(self):
        return self.opened

    def read(self):
        if self.frames:
            return True, self.frames.pop(0)
        return False, None

    def release(self):
        self.released = True


class TickingClock:
    """Advances one second every time it is read"""

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        self.now += 1.0
        return self.now


@pytest.fixture
def scans():
    return []


@pytest.fixture
def rejections():
    return []


@pytest.fixture
def keyboard(scans, rejections, clock):
    scanner = KeystrokeScanner(scans.append, rejections.append, clock=clock)
    scanner.arm()
    return scanner


def type_keys(scanner, clock, keys, gap_ms=20):
    results = []
    for key in keys:
        results.append(scanner.press(key))
        clock.advance(gap_ms)
    return results


class TestKeystrokeScanner:
    def test_keys_within_idle_window_form_one_scan(self, keyboard, clock, scans):
        results = type_keys(keyboard, clock, ["A", "B", "C", "Enter"], gap_ms=50)
        assert scans == ["ABC"]
        assert results[-1] == "ABC"
        assert keyboard.buffer == ""

    def test_idle_gap_before_enter_drops_the_buffer(self, keyboard, clock, scans):
        type_keys(keyboard, clock, ["A", "B", "C"])
        clock.advance(201)
        assert keyboard.press("Enter") is None
        assert scans == []

    def test_idle_gap_separates_bursts(self, keyboard, clock, scans):
        type_keys(keyboard, clock, ["X", "Y"])
        clock.advance(300)
        type_keys(keyboard, clock, ["1", "2", "3", "Enter"])
        assert scans == ["123"]

    def test_short_scan_is_rejected(self, keyboard, clock, scans, rejections):
        type_keys(keyboard, clock, ["A", "B", "Enter"])
        assert scans == []
        assert rejections == [TOO_SHORT_MESSAGE]

    def test_json_payload_characters_are_kept(self, keyboard, clock, scans):
        payload = '{"token":"abc-123","checkinUrl":"https://events.etu.nz/api/checkin/abc-123"}'
        type_keys(keyboard, clock, list(payload) + ["Enter"])
        assert scans == [payload]

    def test_non_printable_keys_are_ignored(self, keyboard, clock, scans):
        type_keys(keyboard, clock, ["Shift", "A", "Tab", "B", "#", "C", "Enter"])
        assert scans == ["ABC"]

    def test_typing_in_form_fields_is_never_captured(self, keyboard, scans):
        for tag in ("input", "TEXTAREA", "select"):
            for key in ("A", "B", "C", "Enter"):
                assert keyboard.press(key, focused_element=tag) is None
        assert keyboard.buffer == ""
        assert scans == []

    def test_modal_blocks_capture(self, keyboard, scans):
        for key in ("A", "B", "C", "Enter"):
            keyboard.press(key, modal_open=True)
        assert scans == []

    def test_disarmed_scanner_ignores_keys(self, scans, clock):
        scanner = KeystrokeScanner(scans.append, clock=clock)
        type_keys(scanner, clock, ["A", "B", "C", "Enter"])
        assert scans == []

    def test_close_drops_buffer_and_disarms(self, keyboard, clock, scans):
        type_keys(keyboard, clock, ["A", "B"])
        keyboard.close()
        assert not keyboard.armed
        assert keyboard.buffer == ""


class TestDecodeImage:
    def test_returns_first_code(self, png):
        decoder = lambda image: symbols("first", "second")
        assert decode_image(png, decoder=decoder) == "first"

    def test_no_code_found(self, png):
        with pytest.raises(NoCodeFoundException):
            decode_image(png, decoder=lambda image: [])

    def test_unreadable_image(self):
        with pytest.raises(DecoderInitException):
            decode_image(b"definitely not an image", decoder=lambda image: [])

    def test_empty_upload(self):
        with pytest.raises(DecoderInitException):
            decode_image(b"", decoder=lambda image: [])

    def test_non_utf8_code_is_read_as_latin1(self, png):
        decoder = lambda image: [SimpleNamespace(data="Māori Hall".encode("utf-8")),
                                 SimpleNamespace(data=b"caf\xe9-tok")]
        assert decode_image(png, decoder=decoder) == "Māori Hall"
        assert decode_image(png, decoder=lambda image: [SimpleNamespace(data=b"caf\xe9-tok")]) == "café-tok"


class TestCameraScanner:
    def make(self, capture, **kwargs):
        decoder = lambda frame: symbols(frame) if frame else []
        kwargs.setdefault("sleep", lambda seconds: None)
        return CameraScanner(capture_factory=lambda device: capture, decoder=decoder, **kwargs)

    def test_one_shot_forward_and_release(self):
        capture = FakeCapture(["", "", "token-1", "token-2"])
        decoded = []
        camera = self.make(capture)

        assert camera.scan_once(decoded.append) == "token-1"
        assert decoded == ["token-1"]
        assert capture.released
        assert not camera.active

    def test_suppressed_codes_are_skipped(self, clock):
        suppressor = ScanSuppressor(clock=clock)
        suppressor.mark_seen("token-1")
        capture = FakeCapture(["token-1", "token-1", "token-2"])
        camera = self.make(capture, suppressor=suppressor)

        assert camera.scan_once() == "token-2"

    def test_decoder_errors_are_frame_noise(self):
        calls = []

        def flaky(frame):
            calls.append(frame)
            if len(calls) == 1:
                raise ValueError("corrupt frame")
            return symbols(frame)

        capture = FakeCapture(["bad", "good"])
        camera = CameraScanner(capture_factory=lambda device: capture, decoder=flaky)
        assert camera.scan_once() == "good"

    def test_timeout_returns_none_and_releases(self):
        capture = FakeCapture([])
        camera = self.make(capture, timeout=3, clock=TickingClock())
        assert camera.scan_once() is None
        assert capture.released

    def test_lost_device_gives_up_after_repeated_failed_reads(self):
        capture = FakeCapture([])
        pauses = []
        camera = self.make(capture, timeout=3600, clock=TickingClock(), sleep=pauses.append, max_read_failures=4)

        with pytest.raises(CameraUnavailableException):
            camera.scan_once()
        assert len(pauses) == 3
        assert all(pause > 0 for pause in pauses)
        assert capture.released

    def test_good_frame_resets_failed_read_count(self):
        capture = FakeCapture([])
        reads = iter([(False, None), (False, None), (True, ""), (False, None), (False, None), (True, "token-1")])
        capture.read = lambda: next(reads)
        camera = self.make(capture, max_read_failures=3)

        assert camera.scan_once() == "token-1"

    def test_device_that_does_not_open(self):
        capture = FakeCapture([], opened=False)
        camera = self.make(capture)
        with pytest.raises(CameraNotFoundException):
            camera.start()
        assert capture.released
        assert not camera.active

    def test_permission_error_is_classified(self):
        def denied(device):
            raise PermissionError("access denied")

        camera = CameraScanner(capture_factory=denied, decoder=lambda frame: [])
        with pytest.raises(CameraPermissionException):
            camera.start()

    def test_missing_device_path(self):
        camera = CameraScanner(device="/dev/no-such-video-device", capture_factory=FakeCapture)
        with pytest.raises(CameraNotFoundException):
            camera.start()

    def test_stop_is_idempotent(self):
        camera = self.make(FakeCapture([]))
        camera.stop()
        camera.start()
        camera.stop()
        camera.stop()
        assert not camera.active


class TestClassifyCameraError:
    def test_browser_error_names(self):
        assert isinstance(classify_camera_error("NotAllowedError: Permission denied"), CameraPermissionException)
        assert isinstance(classify_camera_error("NotFoundError: Requested device not found"),
                          CameraNotFoundException)

    def test_os_errors(self):
        assert isinstance(classify_camera_error(PermissionError("nope")), CameraPermissionException)
        assert isinstance(classify_camera_error(FileNotFoundError("gone")), CameraNotFoundException)

    def test_anything_else_is_generic(self):
        error = classify_camera_error("OverconstrainedError")
        assert type(error) is CameraUnavailableException
        assert error.error_code == "CAMERA_UNAVAILABLE"
