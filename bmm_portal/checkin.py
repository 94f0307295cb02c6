"""
Check-in intake

CheckinPipeline turns one decoded string into one backend call and a
classified CheckinResult. CheckinStation is a scanning desk: it owns the
suppression window, the keystroke scanner, the counters and the recent
check-in log, and turns every result into a user-visible notice.
"""

import json
import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import gspread
import requests
from google.oauth2.service_account import Credentials

from .backend import BackendClient
from .exceptions import (
    BackendException,
    DataValidationException,
    InvalidScannerLinkException,
    NoEventSelectedException,
)
from .models import (
    CheckinContext,
    CheckinLogEntry,
    CheckinResult,
    CheckinStatus,
    CheckinVariant,
    Notice,
    NoticeLevel,
    ScanSource,
)
from .scanner import KeystrokeScanner, decode_image
from .suppression import ScanSuppressor

logger = logging.getLogger(__name__)

GENERIC_FAILURE_MESSAGE = "Failed to process QR code, please try again"
TOO_RECENT_MESSAGE = "This QR code was scanned too recently, please wait a moment"
STILL_PROCESSING_MESSAGE = "Still processing previous scan, please wait..."

SHEET_SCOPES = [
    "https://www.googleapis.com/auth/spreadsheets",
    "https://www.googleapis.com/auth/drive",
]


def _scan_payload(decoded_text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(decoded_text.strip())
    except ValueError:
        return {}
    return payload if isinstance(payload, dict) else {}


def extract_token(decoded_text: str) -> str:
    """
    Get the member token out of a decoded QR code

    Ticket QR codes carry a JSON payload with a ``token`` field; plain-text
    codes and barcodes carry the token itself.

    Args:
        decoded_text: Text produced by a scanner

    Returns:
        The token to submit
    """
    token = _scan_payload(decoded_text).get("token")
    if token:
        return str(token)
    return decoded_text.strip()


def extract_membership_number(decoded_text: str) -> Optional[str]:
    """Membership number carried by a ticket QR payload, if any"""
    number = _scan_payload(decoded_text).get("membershipNumber")
    if number in (None, ""):
        return None
    return str(number).strip() or None


def open_checkin_worksheet(service_account_json: str, sheet_name: str):
    """
    Open the first worksheet of the check-in log spreadsheet

    Args:
        service_account_json: Google service account key as JSON text
        sheet_name: Title of the spreadsheet

    Returns:
        gspread Worksheet
    """
    service_account_info = json.loads(service_account_json)
    creds = Credentials.from_service_account_info(service_account_info, scopes=SHEET_SCOPES)
    client = gspread.authorize(creds)
    worksheet = client.open(sheet_name).sheet1
    logger.info("Mirroring check-ins to spreadsheet '%s'", sheet_name)
    return worksheet


class CheckinPipeline:
    """
    Submits decoded scans to the backend and classifies the answer
    """

    def __init__(self, backend: BackendClient):
        self.backend = backend

    def submit_scan(self, decoded_text: str, context: CheckinContext,
                    source: ScanSource = ScanSource.CAMERA) -> CheckinResult:
        """
        Submit one scan

        Args:
            decoded_text: Raw text from a scanner
            context: Active event, venue and admin
            source: Scanner that produced the text

        Returns:
            SUCCESS, WARNING or ERROR result

        Raises:
            NoEventSelectedException: If no event is active; nothing is sent
        """
        token = extract_token(decoded_text)
        if context is None or not context.event_id:
            raise NoEventSelectedException()

        location = context.location_for(source)
        logger.info("Submitting %s check-in for event %s at %s", context.variant.value, context.event_id, location)
        try:
            if context.variant is CheckinVariant.VENUE:
                envelope = self.backend.checkin_venue(
                    context.event_id, context.admin_token, context.venue, token,
                    location, context.admin_name, context.admin_email,
                )
            elif context.variant is CheckinVariant.MANUAL:
                membership_number = extract_membership_number(decoded_text) or token
                envelope = self.backend.checkin_manual(
                    membership_number, context.event_id, location, context.venue, token=token,
                )
            else:
                envelope = self.backend.checkin_qr(
                    context.event_id, token, location, context.admin_name, context.admin_email,
                )
        except BackendException as e:
            logger.error("Check-in submission failed: %s", e)
            return CheckinResult.failure(e.server_message or GENERIC_FAILURE_MESSAGE, token=token)

        result = CheckinResult.from_envelope(envelope, token=token, location=location)
        logger.info("Check-in result for %s: %s", token, result.status.value)
        return result

    def submit_manual(self, membership_number: str, context: CheckinContext) -> CheckinResult:
        """
        Check a member in by membership number

        Raises:
            DataValidationException: If the membership number is empty
            NoEventSelectedException: If no event is active
        """
        membership_number = (membership_number or "").strip()
        if not membership_number:
            raise DataValidationException("membershipNumber", "Please enter a membership number")
        if context is None or not context.event_id:
            raise NoEventSelectedException()

        location = context.venue or ScanSource.MANUAL.location_label
        try:
            envelope = self.backend.checkin_manual(membership_number, context.event_id, location, context.venue)
        except BackendException as e:
            return CheckinResult.failure(e.server_message or "Check-in failed", token=membership_number)
        return CheckinResult.from_envelope(envelope, token=membership_number, location=location)


class CheckinLog:
    """
    Recent check-ins shown at the desk, newest first

    With a worksheet attached, entries are also queued as spreadsheet rows
    and appended in batches of ``batch_size``.
    """

    def __init__(self, max_entries: int = 50, worksheet=None, batch_size: int = 10):
        self._entries: Deque[CheckinLogEntry] = deque(maxlen=max_entries)
        self.worksheet = worksheet
        self.batch_size = batch_size
        self._pending_rows: List[List[str]] = []

    def add(self, entry: CheckinLogEntry) -> None:
        self._entries.appendleft(entry)
        if self.worksheet is not None:
            self._pending_rows.append(entry.to_row())
            if len(self._pending_rows) >= self.batch_size:
                self.flush()

    def flush(self) -> int:
        """
        Append queued rows to the worksheet

        Returns:
            Number of rows written; 0 when the sheet could not be reached
            (the rows stay queued for the next flush)
        """
        if self.worksheet is None or not self._pending_rows:
            return 0
        rows = list(self._pending_rows)
        try:
            self.worksheet.append_rows(rows, value_input_option="USER_ENTERED")
        except (gspread.exceptions.GSpreadException, requests.RequestException) as e:
            logger.warning("Could not append %d check-in rows to the sheet: %s", len(rows), e)
            return 0
        del self._pending_rows[:len(rows)]
        logger.info("Appended %d check-in rows to the sheet", len(rows))
        return len(rows)

    @property
    def pending_rows(self) -> int:
        return len(self._pending_rows)

    def entries(self) -> List[CheckinLogEntry]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


class CheckinStation:
    """
    One scanning desk session

    Every producer (camera, image upload, barcode scanner, manual entry)
    ends in ``handle_decoded``, which applies the suppression window,
    serializes submissions and updates counters, log and notices.
    """

    def __init__(self, pipeline: CheckinPipeline, context: CheckinContext,
                 suppressor: ScanSuppressor = None, log: CheckinLog = None,
                 idle_ms: int = 200, min_length: int = 3, clock: Callable[[], float] = None,
                 max_notices: int = 20):
        """
        Initialize a check-in station

        Args:
            pipeline: Check-in pipeline bound to the backend
            context: Active event, venue and admin identity
            suppressor: Duplicate-scan suppressor, in-process by default
            log: Recent check-in log
            idle_ms: Keystroke buffer idle timeout
            min_length: Shortest keystroke scan accepted
            clock: Monotonic clock for the keystroke scanner
            max_notices: Number of notices kept for display
        """
        self.pipeline = pipeline
        self.context = context
        self.suppressor = suppressor if suppressor is not None else ScanSuppressor()
        self.log = log if log is not None else CheckinLog()
        self.stats = {"total": 0, "checked_in": 0}
        self.event_info: Dict[str, Any] = {}
        self._notices: Deque[Notice] = deque(maxlen=max_notices)
        self._processing = threading.Lock()
        self._keystroke_result: Optional[CheckinResult] = None
        self.validated = context.variant is not CheckinVariant.VENUE

        scanner_kwargs = {"idle_ms": idle_ms, "min_length": min_length}
        if clock is not None:
            scanner_kwargs["clock"] = clock
        self.keystrokes = KeystrokeScanner(self._on_keystroke_scan, self._on_keystroke_reject, **scanner_kwargs)
        if self.validated:
            self.keystrokes.arm()

    # Notices

    def notify(self, level: NoticeLevel, message: str) -> Notice:
        notice = Notice(level, message)
        self._notices.append(notice)
        return notice

    @property
    def notices(self) -> List[Notice]:
        return list(self._notices)

    @property
    def last_notice(self) -> Optional[Notice]:
        return self._notices[-1] if self._notices else None

    # Session setup

    def validate_link(self) -> Dict:
        """
        Validate a venue scanner link before accepting scans

        Seeds the event details and counters from the backend's answer.

        Raises:
            InvalidScannerLinkException: If the backend rejects the link
        """
        if self.context.variant is not CheckinVariant.VENUE:
            return {}
        if not (self.context.admin_token and self.context.event_id and self.context.venue):
            raise InvalidScannerLinkException("Invalid scan link. Missing required parameters.")

        try:
            data = self.pipeline.backend.validate_venue_link(
                self.context.admin_token, self.context.event_id, self.context.venue,
            )
        except BackendException as e:
            raise InvalidScannerLinkException(e.server_message or "Invalid or expired scan link")

        self.event_info = dict(data.get("event") or {})
        stats = data.get("stats") or {}
        self.stats["total"] = int(stats.get("totalMembers", stats.get("total", 0)) or 0)
        self.stats["checked_in"] = int(stats.get("checkedIn", stats.get("checked_in", 0)) or 0)
        self.validated = True
        self.keystrokes.arm()
        logger.info("Venue scanner link validated for %s (event %s)", self.context.venue, self.context.event_id)
        return data

    def _require_ready(self) -> None:
        if not self.context.event_id:
            raise NoEventSelectedException()
        if not self.validated:
            raise InvalidScannerLinkException("Scan link has not been validated")

    # Intake

    def handle_decoded(self, decoded_text: str, source: ScanSource) -> Optional[CheckinResult]:
        """
        Run one decoded string through suppression and the pipeline

        Args:
            decoded_text: Text from any scanner
            source: Which scanner produced it

        Returns:
            The check-in result, or None when the scan was suppressed or
            rejected because another keystroke scan is in flight

        Raises:
            NoEventSelectedException: If no event is active
            InvalidScannerLinkException: If a venue link was not validated
        """
        self._require_ready()

        if self.suppressor.should_suppress(decoded_text):
            logger.info("Suppressed repeat scan from %s", source.value)
            self.notify(NoticeLevel.WARNING, TOO_RECENT_MESSAGE)
            return None

        # Keystroke scans are rejected while busy; camera and upload scans wait their turn
        if not self._processing.acquire(blocking=source is not ScanSource.BARCODE):
            self.notify(NoticeLevel.INFO, STILL_PROCESSING_MESSAGE)
            return None
        try:
            self.suppressor.mark_seen(decoded_text)
            result = self.pipeline.submit_scan(decoded_text, self.context, source)
            self._record(result, source)
            return result
        finally:
            self._processing.release()

    def _record(self, result: CheckinResult, source: ScanSource) -> None:
        if result.status is CheckinStatus.SUCCESS:
            self.log.add(CheckinLogEntry.from_result(result, source))
            self.stats["checked_in"] += 1
            self.notify(NoticeLevel.SUCCESS, f"{result.member_name} checked in successfully at {result.location}")
        elif result.status is CheckinStatus.WARNING:
            self.log.add(CheckinLogEntry.from_result(result, source))
            message = f"{result.member_name} is already checked in at {result.previous_location}"
            if result.previous_time:
                message += f" ({result.previous_time})"
            self.notify(NoticeLevel.WARNING, message)
        else:
            self.notify(NoticeLevel.ERROR, result.message or GENERIC_FAILURE_MESSAGE)

    def _on_keystroke_scan(self, text: str) -> None:
        self._keystroke_result = self.handle_decoded(text, ScanSource.BARCODE)

    def _on_keystroke_reject(self, message: str) -> None:
        self.notify(NoticeLevel.ERROR, message)

    def press_key(self, key: str, focused_element: str = None, modal_open: bool = False) -> Optional[CheckinResult]:
        """
        Feed a key event from a hardware barcode scanner

        Returns:
            The check-in result when this key completed a scan
        """
        self._keystroke_result = None
        self.keystrokes.press(key, focused_element=focused_element, modal_open=modal_open)
        result, self._keystroke_result = self._keystroke_result, None
        return result

    def scan_with_camera(self, camera) -> Optional[CheckinResult]:
        """
        Run one camera scan attempt and submit what it decodes

        Args:
            camera: CameraScanner; it consults this station's suppressor

        Returns:
            The check-in result, or None if nothing was decoded in time
        """
        self._require_ready()
        if camera.suppressor is None:
            camera.suppressor = self.suppressor
        text = camera.scan_once()
        if text is None:
            self.notify(NoticeLevel.INFO, "No QR code detected, please try again")
            return None
        return self.handle_decoded(text, ScanSource.CAMERA)

    def scan_image(self, data: bytes, decoder: Callable = None) -> Optional[CheckinResult]:
        """
        Decode an uploaded image and submit its QR code

        Raises:
            NoCodeFoundException: If the image holds no QR code
            DecoderInitException: If the image cannot be read
        """
        self._require_ready()
        text = decode_image(data, decoder=decoder)
        return self.handle_decoded(text, ScanSource.UPLOAD)

    def manual_checkin(self, membership_number: str) -> CheckinResult:
        self._require_ready()
        result = self.pipeline.submit_manual(membership_number, self.context)
        self._record(result, ScanSource.MANUAL)
        return result

    def close(self) -> None:
        """End the session: disarm the keystroke scanner, forget recent scans, flush the sheet"""
        self.keystrokes.close()
        self.suppressor.clear()
        self.log.flush()
        logger.info("Check-in station for event %s closed", self.context.event_id)

    def snapshot(self) -> Dict:
        return {
            "eventId": self.context.event_id,
            "venue": self.context.venue,
            "variant": self.context.variant.value,
            "validated": self.validated,
            "event": self.event_info,
            "stats": dict(self.stats),
            "recentCheckins": [entry.to_dict() for entry in self.log.entries()],
            "notices": [notice.to_dict() for notice in self.notices],
        }
