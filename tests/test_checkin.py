import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import gspread
import pytest

from bmm_portal.checkin import (
    GENERIC_FAILURE_MESSAGE,
    STILL_PROCESSING_MESSAGE,
    TOO_RECENT_MESSAGE,
    CheckinLog,
    CheckinPipeline,
    CheckinStation,
    extract_membership_number,
    extract_token,
)
from bmm_portal.exceptions import (
    BackendException,
    DataValidationException,
    InvalidScannerLinkException,
    NoCodeFoundException,
    NoEventSelectedException,
)
from bmm_portal.models import (
    CheckinContext,
    CheckinLogEntry,
    CheckinResult,
    CheckinStatus,
    CheckinVariant,
    NoticeLevel,
    ScanSource,
)
from bmm_portal.suppression import ScanSuppressor

WARNING_ENVELOPE = {
    "status": "warning",
    "message": "Member already checked in",
    "data": {"memberName": "Jane Doe", "previousCheckinLocation": "Gate A", "previousCheckinTime": "10:02"},
}


@pytest.fixture
def context():
    return CheckinContext(event_id="7", admin_name="Desk One", admin_email="desk@example.com")


@pytest.fixture
def pipeline(backend):
    return CheckinPipeline(backend)


@pytest.fixture
def station(pipeline, context, clock):
    return CheckinStation(pipeline, context, suppressor=ScanSuppressor(clock=clock), clock=clock)


class TestExtractToken:
    def test_json_payload(self):
        assert extract_token(json.dumps({"token": "abc", "type": "event_checkin"})) == "abc"

    def test_plain_text(self):
        assert extract_token("  abc-123 \n") == "abc-123"

    def test_json_without_token_falls_back_to_raw(self):
        assert extract_token('{"name": "Jane"}') == '{"name": "Jane"}'
        assert extract_token("[1, 2]") == "[1, 2]"
        assert extract_token("12345") == "12345"

    def test_membership_number(self):
        assert extract_membership_number(json.dumps({"token": "abc", "membershipNumber": 12345})) == "12345"
        assert extract_membership_number(json.dumps({"token": "abc"})) is None
        assert extract_membership_number("abc") is None


class TestCheckinPipeline:
    def test_no_event_fails_before_any_call(self, pipeline, backend):
        with pytest.raises(NoEventSelectedException):
            pipeline.submit_scan("abc", CheckinContext(event_id=None))
        with pytest.raises(NoEventSelectedException):
            pipeline.submit_scan("abc", None)
        assert backend.calls == []

    def test_admin_qr_submission(self, pipeline, backend, context):
        result = pipeline.submit_scan(json.dumps({"token": "tok-9"}), context, ScanSource.UPLOAD)

        assert backend.calls == [
            ("checkin_qr", ("7", "tok-9", "Image Upload QR Scanner", "Desk One", "desk@example.com")),
        ]
        assert result.status is CheckinStatus.SUCCESS
        assert result.member_name == "Jane Doe"
        assert result.location == "Image Upload QR Scanner"

    def test_venue_submission(self, pipeline, backend):
        context = CheckinContext(event_id="7", venue="Wellington", admin_token="adm-1",
                                 variant=CheckinVariant.VENUE)
        pipeline.submit_scan("tok-9", context, ScanSource.BARCODE)

        (args,) = backend.calls_to("checkin_venue")
        assert args[:5] == ("7", "adm-1", "Wellington", "tok-9", "Wellington - BMM Venue Scanner")

    def test_warning_is_classified(self, pipeline, backend, context):
        backend.checkin_responses.append(WARNING_ENVELOPE)
        result = pipeline.submit_scan("tok-9", context)

        assert result.status is CheckinStatus.WARNING
        assert result.member_name == "Jane Doe"
        assert result.previous_location == "Gate A"
        assert result.previous_time == "10:02"

    def test_warning_with_alternative_field_names(self):
        result = CheckinResult.from_envelope({
            "status": "warning",
            "data": {"name": "Sam Roe", "checkInLocation": "Door 2", "checkInTime": "09:15"},
        })
        assert result.member_name == "Sam Roe"
        assert result.previous_location == "Door 2"
        assert result.previous_time == "09:15"

    def test_error_envelope_message_is_verbatim(self, pipeline, backend, context):
        backend.checkin_responses.append({"status": "error", "message": "Ticket not valid for this event"})
        result = pipeline.submit_scan("tok-9", context)
        assert result.status is CheckinStatus.ERROR
        assert result.message == "Ticket not valid for this event"

    def test_backend_failure_uses_server_message(self, pipeline, backend, context):
        backend.failures["checkin_qr"] = BackendException("HTTP 400", status_code=400,
                                                          server_message="Invalid QR code")
        assert pipeline.submit_scan("tok-9", context).message == "Invalid QR code"

    def test_backend_failure_without_message_is_generic(self, pipeline, backend, context):
        backend.failures["checkin_qr"] = BackendException("Could not reach the event backend")
        result = pipeline.submit_scan("tok-9", context)
        assert result.status is CheckinStatus.ERROR
        assert result.message == GENERIC_FAILURE_MESSAGE

    def test_missing_status_is_an_error(self, pipeline, backend, context):
        backend.checkin_responses.append({"data": {"memberName": "Jane Doe"}})
        assert pipeline.submit_scan("tok-9", context).status is CheckinStatus.ERROR

    def test_manual_requires_membership_number(self, pipeline, backend, context):
        with pytest.raises(DataValidationException):
            pipeline.submit_manual("   ", context)
        assert backend.calls == []

    def test_manual_desk_scan_passes_token(self, pipeline, backend):
        context = CheckinContext(event_id="7", venue="Gate A", variant=CheckinVariant.MANUAL)
        pipeline.submit_scan(json.dumps({"token": "tok-5", "membershipNumber": "555"}), context)
        pipeline.submit_scan("tok-6", context)

        calls = backend.calls_to("checkin_manual")
        assert calls[0][0] == "555"
        assert calls[0][-1] == "tok-5"
        assert calls[1][0] == "tok-6"
        assert calls[1][-1] == "tok-6"


class TestCheckinStation:
    def test_success_updates_log_counter_and_notice(self, station):
        result = station.handle_decoded("tok-1", ScanSource.CAMERA)

        assert result.status is CheckinStatus.SUCCESS
        assert station.stats["checked_in"] == 1
        assert len(station.log) == 1
        assert not station.log.entries()[0].already_checked_in
        notice = station.last_notice
        assert notice.level is NoticeLevel.SUCCESS
        assert "Jane Doe" in notice.message
        assert "Camera QR Scanner" in notice.message

    def test_warning_does_not_increment_counter(self, station, backend):
        backend.checkin_responses.append(WARNING_ENVELOPE)
        result = station.handle_decoded("tok-1", ScanSource.CAMERA)

        assert result.status is CheckinStatus.WARNING
        assert result.member_name == "Jane Doe"
        assert result.previous_location == "Gate A"
        assert station.stats["checked_in"] == 0
        entry = station.log.entries()[0]
        assert entry.already_checked_in
        assert entry.location == "Gate A"
        assert station.last_notice.level is NoticeLevel.WARNING
        assert "Gate A" in station.last_notice.message

    def test_error_adds_no_log_entry(self, station, backend):
        backend.checkin_responses.append({"status": "error", "message": "Unknown ticket"})
        station.handle_decoded("tok-1", ScanSource.CAMERA)

        assert len(station.log) == 0
        assert station.stats["checked_in"] == 0
        assert station.last_notice.level is NoticeLevel.ERROR
        assert station.last_notice.message == "Unknown ticket"

    def test_repeat_scan_is_suppressed_for_five_seconds(self, station, backend, clock):
        station.handle_decoded("tok-1", ScanSource.CAMERA)
        assert station.handle_decoded("tok-1", ScanSource.CAMERA) is None
        assert station.last_notice.message == TOO_RECENT_MESSAGE
        assert len(backend.calls) == 1

        clock.advance(5000)
        backend.checkin_responses.append(WARNING_ENVELOPE)
        result = station.handle_decoded("tok-1", ScanSource.CAMERA)
        assert result.status is CheckinStatus.WARNING
        assert len(backend.calls) == 2
        assert station.stats["checked_in"] == 1

    def test_no_event_fails_without_network(self, pipeline, backend):
        station = CheckinStation(pipeline, CheckinContext(event_id=None))
        with pytest.raises(NoEventSelectedException):
            station.handle_decoded("tok-1", ScanSource.CAMERA)
        assert backend.calls == []

    def test_keystroke_scan_is_submitted(self, station, backend, clock):
        result = None
        for key in ["T", "O", "K", "9", "Enter"]:
            result = station.press_key(key)
            clock.advance(10)

        assert result.status is CheckinStatus.SUCCESS
        (args,) = backend.calls_to("checkin_qr")
        assert args[1] == "TOK9"
        assert args[2] == "Barcode Scanner"

    def test_keystroke_scan_rejected_while_processing(self, station, backend, clock):
        station._processing.acquire()
        try:
            for key in ["T", "O", "K", "Enter"]:
                assert station.press_key(key) is None
                clock.advance(10)
        finally:
            station._processing.release()

        assert backend.calls == []
        assert station.last_notice.message == STILL_PROCESSING_MESSAGE

    def test_short_keystroke_scan_is_reported(self, station, backend):
        station.press_key("A")
        station.press_key("Enter")
        assert backend.calls == []
        assert station.last_notice.level is NoticeLevel.ERROR

    def test_image_upload(self, station, backend, png):
        decoder = lambda image: [SimpleNamespace(data=b'{"token": "tok-img"}')]
        result = station.scan_image(png, decoder=decoder)
        assert result.status is CheckinStatus.SUCCESS
        assert backend.calls_to("checkin_qr")[0][1] == "tok-img"

    def test_image_without_code(self, station, backend, png):
        with pytest.raises(NoCodeFoundException):
            station.scan_image(png, decoder=lambda image: [])
        assert backend.calls == []

    def test_camera_scan_uses_station_suppressor(self, station):
        camera = MagicMock()
        camera.suppressor = None
        camera.scan_once.return_value = "tok-cam"

        result = station.scan_with_camera(camera)
        assert camera.suppressor is station.suppressor
        assert result.status is CheckinStatus.SUCCESS

    def test_camera_timeout(self, station, backend):
        camera = MagicMock()
        camera.scan_once.return_value = None
        assert station.scan_with_camera(camera) is None
        assert backend.calls == []
        assert station.last_notice.level is NoticeLevel.INFO

    def test_manual_checkin(self, station, backend):
        result = station.manual_checkin("12345")
        assert result.status is CheckinStatus.SUCCESS
        assert station.stats["checked_in"] == 1
        assert backend.calls_to("checkin_manual")[0][:2] == ("12345", "7")

    def test_close_resets_session_state(self, station, clock):
        station.handle_decoded("tok-1", ScanSource.CAMERA)
        station.press_key("A")
        station.close()

        assert not station.keystrokes.armed
        assert not station.suppressor.should_suppress("tok-1")


class TestVenueStation:
    @pytest.fixture
    def venue_context(self):
        return CheckinContext(event_id="7", venue="Wellington", admin_token="adm-1",
                              variant=CheckinVariant.VENUE)

    def test_scans_rejected_until_validated(self, pipeline, backend, venue_context):
        station = CheckinStation(pipeline, venue_context)
        with pytest.raises(InvalidScannerLinkException):
            station.handle_decoded("tok-1", ScanSource.CAMERA)
        assert not station.keystrokes.armed
        assert backend.calls == []

    def test_validation_seeds_stats(self, pipeline, backend, venue_context):
        station = CheckinStation(pipeline, venue_context)
        station.validate_link()

        assert station.validated
        assert station.keystrokes.armed
        assert station.stats == {"total": 120, "checked_in": 5}
        assert station.event_info["name"] == "BMM Wellington"
        assert backend.calls_to("validate_venue_link") == [("adm-1", "7", "Wellington")]

        station.handle_decoded("tok-1", ScanSource.CAMERA)
        assert station.stats["checked_in"] == 6

    def test_rejected_link(self, pipeline, backend, venue_context):
        backend.failures["validate_venue_link"] = BackendException(
            "HTTP 401", status_code=401, server_message="Invalid or expired scan link")
        station = CheckinStation(pipeline, venue_context)
        with pytest.raises(InvalidScannerLinkException) as excinfo:
            station.validate_link()
        assert excinfo.value.message == "Invalid or expired scan link"
        assert not station.validated

    def test_link_missing_parameters(self, pipeline, backend):
        station = CheckinStation(pipeline, CheckinContext(event_id="7", variant=CheckinVariant.VENUE))
        with pytest.raises(InvalidScannerLinkException):
            station.validate_link()
        assert backend.calls == []


class TestCheckinLog:
    def entry(self, number="1"):
        return CheckinLogEntry("Jane Doe", number, "Gate A", "10:00", source="camera")

    def test_newest_first_and_bounded(self):
        log = CheckinLog(max_entries=2)
        for number in ("1", "2", "3"):
            log.add(self.entry(number))
        assert [e.membership_number for e in log.entries()] == ["3", "2"]

    def test_rows_are_appended_in_batches(self):
        worksheet = MagicMock()
        log = CheckinLog(worksheet=worksheet, batch_size=2)
        log.add(self.entry("1"))
        worksheet.append_rows.assert_not_called()

        log.add(self.entry("2"))
        rows = worksheet.append_rows.call_args.args[0]
        assert [row[0] for row in rows] == ["1", "2"]
        assert log.pending_rows == 0

    def test_sheet_failure_keeps_rows_queued(self):
        worksheet = MagicMock()
        worksheet.append_rows.side_effect = gspread.exceptions.GSpreadException("quota exceeded")
        log = CheckinLog(worksheet=worksheet, batch_size=1)
        log.add(self.entry("1"))

        assert log.pending_rows == 1
        assert len(log) == 1

        worksheet.append_rows.side_effect = None
        assert log.flush() == 1
        assert log.pending_rows == 0
