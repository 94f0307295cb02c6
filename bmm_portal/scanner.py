"""
Scan input sources

Three producers feed decoded strings to one consumer:

- CameraScanner: continuous frame decoding from a video device, one hit per start
- decode_image: a single still image uploaded by the user
- KeystrokeScanner: hardware barcode scanners that type the code and press Enter

Camera dependencies (OpenCV and pyzbar) are loaded on first use so a
barcode-only desk does not pay for them.
"""

import io
import logging
import os
import re
import time
from typing import Any, Callable, Iterable, List, Optional

from PIL import Image, UnidentifiedImageError

from .exceptions import (
    CameraNotFoundException,
    CameraPermissionException,
    CameraUnavailableException,
    DecoderInitException,
    NoCodeFoundException,
)

logger = logging.getLogger(__name__)

SCANNER_CHARACTERS = re.compile(r'[\w\-{}\[\]":,./@\s]')
FORM_ELEMENTS = frozenset({"input", "textarea", "select"})
TOO_SHORT_MESSAGE = "Invalid QR code data - too short"
READ_RETRY_DELAY = 0.05
MAX_READ_FAILURES = 40


def _load_pyzbar_decode() -> Callable:
    try:
        from pyzbar import pyzbar
    except ImportError as e:
        raise DecoderInitException(f"pyzbar is not available ({e})")
    return pyzbar.decode


def _load_cv2():
    try:
        import cv2
    except ImportError as e:
        raise CameraUnavailableException(f"Camera scanning requires OpenCV, which is not available ({e})")
    return cv2


def _symbol_text(data: Any) -> str:
    if not isinstance(data, bytes):
        return str(data)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        # ZBar reports ISO-8859-1 when the code carries no ECI marker
        logger.debug("Decoded code is not UTF-8, reading it as ISO-8859-1")
        return data.decode("latin-1")


def _decoded_texts(symbols: Iterable[Any]) -> List[str]:
    return [_symbol_text(symbol.data) for symbol in symbols]


def classify_camera_error(error: Any, device: Any = None) -> CameraUnavailableException:
    """
    Map a camera failure to the exception the desk should show

    Browser-style names (NotAllowedError, NotFoundError) and OS errors are
    both understood.

    Args:
        error: Exception instance or error message
        device: Device that failed, for the message

    Returns:
        CameraPermissionException, CameraNotFoundException or the generic
        CameraUnavailableException
    """
    label = None if device is None else str(device)
    if isinstance(error, PermissionError):
        return CameraPermissionException(label)
    if isinstance(error, FileNotFoundError):
        return CameraNotFoundException(label)
    text = str(error)
    if "NotAllowedError" in text or "Permission" in text:
        return CameraPermissionException(label)
    if "NotFoundError" in text:
        return CameraNotFoundException(label)
    return CameraUnavailableException()


def decode_image(data: bytes, decoder: Callable = None) -> str:
    """
    Decode the first QR code found in an image

    Args:
        data: Raw image bytes (PNG, JPEG, ...)
        decoder: pyzbar-compatible decode function, loaded lazily by default

    Returns:
        The decoded text

    Raises:
        DecoderInitException: If the image cannot be read
        NoCodeFoundException: If the image holds no QR code
    """
    if not data:
        raise DecoderInitException("empty image")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise DecoderInitException(str(e))

    decode = decoder or _load_pyzbar_decode()
    texts = _decoded_texts(decode(image.convert("L")))
    if not texts:
        raise NoCodeFoundException()
    logger.info("Decoded QR code from uploaded image (%d code(s) found)", len(texts))
    return texts[0]


class CameraScanner:
    """
    One-shot continuous camera decoder

    ``start`` acquires the device, ``scan_once`` reads frames until a code that
    is not currently suppressed appears, forwards it and releases the device.
    Frames without a code are expected noise and are not reported.
    """

    def __init__(self, device: Any = 0, suppressor=None, timeout: float = 30.0,
                 capture_factory: Callable = None, decoder: Callable = None,
                 clock: Callable[[], float] = time.monotonic, sleep: Callable[[float], None] = time.sleep,
                 max_read_failures: int = MAX_READ_FAILURES):
        """
        Initialize camera scanner

        Args:
            device: OpenCV device index or /dev/video path
            suppressor: Optional suppressor consulted before forwarding a code
            timeout: Seconds a scan attempt may run before giving up
            capture_factory: Replacement for cv2.VideoCapture
            decoder: Replacement for pyzbar.decode
            clock: Monotonic clock
            sleep: Called between failed frame reads
            max_read_failures: Consecutive failed reads before the device is
                treated as lost
        """
        self.device = device
        self.suppressor = suppressor
        self.timeout = timeout
        self._capture_factory = capture_factory
        self._decoder = decoder
        self._clock = clock
        self._sleep = sleep
        self.max_read_failures = max_read_failures
        self._cv2 = None
        self._capture = None

    @property
    def active(self) -> bool:
        return self._capture is not None

    def start(self) -> None:
        """
        Acquire the video device

        Raises:
            CameraPermissionException: If access to the device is denied
            CameraNotFoundException: If the device does not exist or cannot be opened
        """
        if self.active:
            return

        if isinstance(self.device, str):
            if not os.path.exists(self.device):
                raise CameraNotFoundException(self.device)
            if not os.access(self.device, os.R_OK):
                raise CameraPermissionException(self.device)

        factory = self._capture_factory
        if factory is None:
            self._cv2 = _load_cv2()
            factory = self._cv2.VideoCapture

        try:
            capture = factory(self.device)
        except OSError as e:
            raise classify_camera_error(e, self.device)

        if not capture.isOpened():
            capture.release()
            raise CameraNotFoundException(str(self.device))

        self._capture = capture
        logger.info("Camera %s started", self.device)

    def stop(self) -> None:
        """Release the video device; safe to call when not started"""
        if self._capture is None:
            return
        try:
            self._capture.release()
        finally:
            self._capture = None
            logger.info("Camera %s stopped", self.device)

    def _decode_frame(self, frame: Any) -> List[str]:
        decode = self._decoder
        if decode is None:
            decode = self._decoder = _load_pyzbar_decode()
        if self._cv2 is not None:
            frame = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2GRAY)
        return _decoded_texts(decode(frame))

    def scan_once(self, on_decoded: Callable[[str], Any] = None) -> Optional[str]:
        """
        Read frames until one code is found or the timeout passes

        Starts the camera if needed and always stops it before returning.

        Args:
            on_decoded: Consumer called with the decoded text

        Returns:
            The decoded text, or None on timeout

        Raises:
            CameraUnavailableException: If the device stops delivering frames
        """
        self.start()
        deadline = self._clock() + self.timeout
        failures = 0
        try:
            while self._clock() < deadline:
                ok, frame = self._capture.read()
                if not ok or frame is None:
                    failures += 1
                    if failures >= self.max_read_failures:
                        logger.warning("Camera %s returned no frame %d times in a row", self.device, failures)
                        raise CameraUnavailableException(
                            "The camera stopped sending images. Please reconnect it or use image upload.")
                    self._sleep(READ_RETRY_DELAY)
                    continue
                failures = 0
                try:
                    texts = self._decode_frame(frame)
                except Exception as e:
                    logger.debug("Frame decode error: %s", e)
                    continue
                for text in texts:
                    if self.suppressor is not None and self.suppressor.should_suppress(text):
                        continue
                    self.stop()
                    if on_decoded is not None:
                        on_decoded(text)
                    return text
            logger.info("Camera scan timed out after %.0fs", self.timeout)
            return None
        finally:
            self.stop()


class KeystrokeScanner:
    """
    Accumulates keystrokes typed by a hardware barcode scanner

    Keys are only accepted while the scanner is armed, no form field has
    focus and no modal is open, so normal typing is never captured. The
    buffer is forgotten after ``idle_ms`` without a key; Enter completes a
    scan of at least ``min_length`` characters.
    """

    def __init__(self, on_scan: Callable[[str], Any], on_reject: Callable[[str], Any] = None,
                 idle_ms: int = 200, min_length: int = 3, clock: Callable[[], float] = time.monotonic):
        self.on_scan = on_scan
        self.on_reject = on_reject
        self.idle_ms = idle_ms
        self.min_length = min_length
        self._clock = clock
        self._buffer = ""
        self._last_key_at: Optional[float] = None
        self.armed = False

    @property
    def buffer(self) -> str:
        self._expire(self._clock())
        return self._buffer

    def arm(self) -> None:
        self.armed = True

    def disarm(self) -> None:
        self.armed = False
        self._reset()

    def close(self) -> None:
        self.disarm()

    def _reset(self) -> None:
        self._buffer = ""
        self._last_key_at = None

    def _expire(self, now: float) -> None:
        if self._buffer and self._last_key_at is not None:
            if (now - self._last_key_at) * 1000.0 >= self.idle_ms:
                logger.debug("Clearing scanner buffer after idle timeout: %r", self._buffer)
                self._reset()

    def press(self, key: str, focused_element: Optional[str] = None, modal_open: bool = False) -> Optional[str]:
        """
        Feed one key event

        Args:
            key: Key name as reported by the browser ("A", "{", "Enter", ...)
            focused_element: Tag name of the focused element, if any
            modal_open: Whether a modal dialog is showing

        Returns:
            The completed scan when this key finished one, else None
        """
        if not self.armed or modal_open:
            return None
        if focused_element and focused_element.lower() in FORM_ELEMENTS:
            return None

        now = self._clock()
        self._expire(now)

        if key == "Enter":
            if not self._buffer:
                return None
            data = self._buffer.strip()
            self._reset()
            if len(data) < self.min_length:
                if self.on_reject is not None:
                    self.on_reject(TOO_SHORT_MESSAGE)
                return None
            self.on_scan(data)
            return data

        if len(key) == 1 and SCANNER_CHARACTERS.match(key):
            self._buffer += key
            self._last_key_at = now
        return None
