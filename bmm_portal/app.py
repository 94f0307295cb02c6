"""
Main Application Module for the BMM Portal

This module contains the main Flask application class that wires the
services together and handles HTTP requests: the member preference flow
and tickets under /bmm, and the check-in desk under /checkin.
"""

import io
import logging
import threading
import time
import uuid
import weakref
from typing import Callable, Dict, Optional

import gspread
import redis
import requests
from flask import Flask, Response, request, send_file, session
from google.auth.exceptions import GoogleAuthError

from .backend import BackendClient
from .checkin import CheckinLog, CheckinPipeline, CheckinStation, open_checkin_worksheet
from .config import build_config
from .exceptions import (
    BackendException,
    BMMPortalException,
    CameraUnavailableException,
    DataAccessException,
    DataValidationException,
    DecodeException,
    InvalidScannerLinkException,
    InvalidTransitionException,
    MemberNotFoundException,
    NoEventSelectedException,
)
from .flow import FlowEvent, MemberFlow
from .logging_config import setup_logging
from .models import CheckinContext, CheckinResult, CheckinVariant, ScanSource, TicketArtifact
from .repositories import DataRepository, RedisRepository, RepositoryFactory
from .retry import RetryPolicy, fixed_backoff
from .scanner import CameraScanner
from .services import MemberService, TicketService
from .suppression import SUPPRESSION_PREFIX, RedisScanSuppressor, ScanSuppressor
from .tickets import TicketBuilder
from .venues import VenueConfig, default_venue_config, load_venue_config

logger = logging.getLogger(__name__)

FLOW_HASH_NAME = "bmm:member_flows"
FLOW_LOCK_PREFIX = "bmm:flow_lock"


class BMMPortalApp:
    """
    Main Flask application class for the BMM Portal

    This class orchestrates all services and exposes the member flow,
    ticket exports and check-in desk over HTTP.
    """

    def __init__(self, config: Optional[dict] = None, backend: BackendClient = None,
                 flow_repository: DataRepository = None, venue_config: VenueConfig = None,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic):
        """
        Initialize the BMM Portal application

        Args:
            config: Optional configuration dictionary
            backend: Backend client, built from the configuration by default
            flow_repository: Store for member flow records
            venue_config: Venue configuration, the shipped asset by default
            sleep: Sleep used between ticket fetch attempts
            clock: Monotonic clock used to expire idle check-in desks
        """
        # Initialize Flask app
        self.app = Flask(__name__)
        self._configure_app(config)

        # Venue data and backend
        path = self.config['VENUE_CONFIG_PATH']
        self.venue_config = venue_config or (load_venue_config(path) if path else default_venue_config())
        self.backend = backend or BackendClient(
            self.config['BMM_API_URL'],
            api_token=self.config['BMM_API_TOKEN'],
            timeout=self.config['BMM_API_TIMEOUT'],
        )

        # Initialize repositories
        self.flow_repository = flow_repository or self._create_flow_repository()

        # Initialize services
        self.ticket_builder = TicketBuilder(self.venue_config, portal_url=self.config['BMM_PORTAL_URL'])
        self.ticket_service = TicketService(self.backend, self.ticket_builder, RetryPolicy(
            max_attempts=self.config['TICKET_FETCH_ATTEMPTS'],
            backoff=fixed_backoff(self.config['TICKET_FETCH_RETRY_DELAY']),
            initial_delay=self.config['TICKET_FETCH_INITIAL_DELAY'],
            retry_on=(BackendException,),
            sleep=sleep,
        ))
        self.member_service = MemberService(self.backend, self.flow_repository)
        self.pipeline = CheckinPipeline(self.backend)
        self._flow_locks = weakref.WeakValueDictionary()
        self._flow_locks_guard = threading.Lock()

        # Check-in desks, keyed by the id kept in the Flask session. They live
        # in this process, so desks need a single worker (or sticky sessions).
        self.clock = clock
        self.stations: Dict[str, CheckinStation] = {}
        self._station_last_used: Dict[str, float] = {}
        self._stations_lock = threading.Lock()
        self.camera_factory: Callable[[], CameraScanner] = lambda: CameraScanner(
            self.config['CAMERA_DEVICE'], timeout=self.config['CAMERA_TIMEOUT'],
        )
        self._worksheet = None

        # Register routes
        self._register_routes()

        # Register error handlers
        self._register_error_handlers()

    def _configure_app(self, config: Optional[dict] = None) -> None:
        """
        Configure Flask application settings

        Args:
            config: Optional configuration dictionary
        """
        self.config = build_config(config)

        self.app.secret_key = self.config['SECRET_KEY']
        self.app.permanent_session_lifetime = self.config['PERMANENT_SESSION_LIFETIME']
        self.app.config['DEBUG'] = self.config['DEBUG']
        self.app.config['TESTING'] = self.config['TESTING']

        if not self.config['TESTING']:
            setup_logging(self.config['LOG_LEVEL'], self.config['LOG_FILE'])

    def _create_flow_repository(self) -> DataRepository:
        storage = self.config['STORAGE']
        if storage == 'redis':
            return RepositoryFactory.create_repository('redis', url=self.config['REDIS_URL'],
                                                       hash_name=FLOW_HASH_NAME)
        if storage == 'json':
            return RepositoryFactory.create_repository('json', file_path=self.config['FLOW_STORE_PATH'])
        return RepositoryFactory.create_repository('memory')

    def _create_suppressor(self, scope: str):
        window = self.config['SCAN_SUPPRESSION_MS']
        if self.config['STORAGE'] == 'redis':
            client = redis.Redis.from_url(self.config['REDIS_URL'], decode_responses=True)
            return RedisScanSuppressor(client, window_ms=window, prefix=f"{SUPPRESSION_PREFIX}:{scope}")
        return ScanSuppressor(window_ms=window)

    def _checkin_worksheet(self):
        if self._worksheet is not None:
            return self._worksheet
        account_json = self.config['GOOGLE_SERVICE_ACCOUNT_JSON']
        sheet_name = self.config['CHECKIN_SHEET_NAME']
        if not (account_json and sheet_name):
            return None
        try:
            self._worksheet = open_checkin_worksheet(account_json, sheet_name)
        except (ValueError, GoogleAuthError, gspread.exceptions.GSpreadException, requests.RequestException) as e:
            logger.warning("Check-in sheet '%s' unavailable, continuing without it: %s", sheet_name, e)
        return self._worksheet

    def _register_routes(self) -> None:
        """Register all Flask routes"""
        self.app.add_url_rule("/health", "health", self.health)

        # Member flow
        self.app.add_url_rule("/bmm/<token>", "flow_status", self.flow_status)
        self.app.add_url_rule("/bmm/<token>/preferences", "submit_preferences",
                              self.submit_preferences, methods=["POST"])
        self.app.add_url_rule("/bmm/<token>/attendance", "attendance", self.attendance, methods=["POST"])
        self.app.add_url_rule("/bmm/<token>/absence", "absence", self.absence, methods=["POST"])
        self.app.add_url_rule("/bmm/<token>/special-vote", "special_vote", self.special_vote, methods=["POST"])

        # Ticket exports
        self.app.add_url_rule("/bmm/<token>/ticket", "ticket", self.ticket)
        self.app.add_url_rule("/bmm/<token>/ticket.ics", "ticket_ics", self.ticket_ics)
        self.app.add_url_rule("/bmm/<token>/ticket.png", "ticket_png", self.ticket_png)
        self.app.add_url_rule("/bmm/<token>/ticket/print", "ticket_print", self.ticket_print)

        # Check-in desk
        self.app.add_url_rule("/checkin/session", "open_checkin", self.open_checkin, methods=["POST"])
        self.app.add_url_rule("/checkin/session", "close_checkin", self.close_checkin, methods=["DELETE"])
        self.app.add_url_rule("/checkin/scan", "checkin_scan", self.checkin_scan, methods=["POST"])
        self.app.add_url_rule("/checkin/upload", "checkin_upload", self.checkin_upload, methods=["POST"])
        self.app.add_url_rule("/checkin/camera", "checkin_camera", self.checkin_camera, methods=["POST"])
        self.app.add_url_rule("/checkin/keystroke", "checkin_keystroke", self.checkin_keystroke, methods=["POST"])
        self.app.add_url_rule("/checkin/manual", "checkin_manual", self.checkin_manual, methods=["POST"])
        self.app.add_url_rule("/checkin/stats", "checkin_stats", self.checkin_stats)

    def _register_error_handlers(self) -> None:
        """Register error handlers for custom exceptions"""

        def error_response(e: BMMPortalException, status: int, **extra):
            body = {"status": "error", "message": e.message, "code": e.error_code}
            body.update(extra)
            return body, status

        @self.app.errorhandler(DataValidationException)
        def handle_validation(e):
            return error_response(e, 400, field=e.field_name)

        @self.app.errorhandler(NoEventSelectedException)
        def handle_no_event(e):
            return error_response(e, 400)

        @self.app.errorhandler(DecodeException)
        def handle_decode(e):
            return error_response(e, 400)

        @self.app.errorhandler(InvalidScannerLinkException)
        def handle_invalid_link(e):
            return error_response(e, 403)

        @self.app.errorhandler(MemberNotFoundException)
        def handle_member_not_found(e):
            return error_response(e, 404)

        @self.app.errorhandler(InvalidTransitionException)
        def handle_invalid_transition(e):
            return error_response(e, 409)

        @self.app.errorhandler(BackendException)
        def handle_backend(e):
            return error_response(e, 502)

        @self.app.errorhandler(CameraUnavailableException)
        def handle_camera(e):
            return error_response(e, 503, fallback="upload")

        @self.app.errorhandler(DataAccessException)
        def handle_data_access(e):
            logger.error("Storage error: %s", e)
            return error_response(e, 500)

        @self.app.errorhandler(BMMPortalException)
        def handle_portal_exception(e):
            logger.error("Unhandled portal error: %s", e)
            return error_response(e, 500)

    def health(self):
        """
        Health check route

        Returns:
            JSON status
        """
        return {"status": "ok", "storage": self.config['STORAGE'], "forums": len(self.venue_config.venues)}

    # Member flow

    def _json_body(self) -> dict:
        body = request.get_json(silent=True)
        if body is None:
            return {}
        if not isinstance(body, dict):
            raise DataValidationException("body", "Expected a JSON object")
        return body

    def _load_flow(self, token: str) -> MemberFlow:
        record = self.member_service.load_flow_record(token)
        if record:
            return MemberFlow.from_dict(record, self.backend, self.ticket_service, self.venue_config)
        member = self.member_service.get_member(token)
        return MemberFlow(member, self.backend, self.ticket_service, self.venue_config)

    def _flow_lock(self, token: str):
        if isinstance(self.flow_repository, RedisRepository):
            timeout = self.config['FLOW_LOCK_TIMEOUT']
            return self.flow_repository.client.lock(f"{FLOW_LOCK_PREFIX}:{token}", timeout=timeout,
                                                    blocking_timeout=timeout)
        with self._flow_locks_guard:
            lock = self._flow_locks.get(token)
            if lock is None:
                lock = threading.Lock()
                self._flow_locks[token] = lock
            return lock

    def _dispatch(self, token: str, event: FlowEvent, **payload):
        # Load, transition and save run under one lock per member
        try:
            with self._flow_lock(token):
                flow = self._load_flow(token)
                flow.dispatch(event, **payload)
                self.member_service.save_flow_record(token, flow.to_dict())
        except redis.exceptions.LockError as e:
            raise DataAccessException("lock", f"Flow for member {token} is busy: {e}")
        return flow.view()

    def flow_status(self, token: str):
        """
        Current flow state of a member

        Args:
            token: Member access token

        Returns:
            JSON flow view
        """
        return self._load_flow(token).view()

    def submit_preferences(self, token: str):
        """
        Preference form submission

        Returns:
            JSON flow view including the ticket
        """
        body = self._json_body()
        return self._dispatch(
            token, FlowEvent.SUBMIT_PREFERENCES,
            intend_to_attend=body.get("intendToAttend"),
            preferred_venues=body.get("preferredVenues"),
            preferred_dates=body.get("preferredDates"),
            preferred_times=body.get("preferredTimes"),
            workplace_info=body.get("workplaceInfo"),
            additional_comments=body.get("additionalComments"),
            suggested_venue=body.get("suggestedVenue"),
            special_vote=body.get("preferenceSpecialVote"),
            financial_form=body.get("financialForm"),
        )

    def attendance(self, token: str):
        """
        Attendance choice: ``{"choice": "attending" | "not_attending"}``
        """
        choice = str(self._json_body().get("choice", "")).strip().lower()
        if choice == "attending":
            return self._dispatch(token, FlowEvent.CONFIRM_ATTENDANCE)
        if choice == "not_attending":
            return self._dispatch(token, FlowEvent.DECLINE_ATTENDANCE)
        raise DataValidationException("choice", "Choose 'attending' or 'not_attending'")

    def absence(self, token: str):
        body = self._json_body()
        return self._dispatch(token, FlowEvent.SUBMIT_ABSENCE, reason=body.get("reason"),
                              details=body.get("details"), special_vote=body.get("specialVote"))

    def special_vote(self, token: str):
        return self._dispatch(token, FlowEvent.ANSWER_SPECIAL_VOTE, choice=self._json_body().get("choice"))

    # Tickets

    def _ticket_for(self, token: str) -> TicketArtifact:
        flow = self._load_flow(token)
        if flow.ticket is not None:
            return flow.ticket
        try:
            server_ticket = self.backend.fetch_ticket(token)
        except BackendException as e:
            logger.info("No stored ticket for %s yet: %s", token, e)
            server_ticket = None
        return self.ticket_builder.build_ticket(flow.member, server_ticket)

    def ticket(self, token: str):
        """
        Ticket as JSON with its share link and QR image

        Returns:
            JSON ticket
        """
        artifact = self._ticket_for(token)
        body = artifact.to_dict()
        body["link"] = self.ticket_builder.ticket_link(artifact)
        body["qrImage"] = self.ticket_builder.qr_data_uri(artifact)
        return body

    def ticket_ics(self, token: str):
        artifact = self._ticket_for(token)
        return Response(
            self.ticket_builder.to_ics(artifact),
            mimetype="text/calendar",
            headers={"Content-Disposition": f"attachment; filename=bmm-ticket-{artifact.membership_number}.ics"},
        )

    def ticket_png(self, token: str):
        artifact = self._ticket_for(token)
        return send_file(io.BytesIO(self.ticket_builder.qr_png(artifact)), mimetype="image/png",
                         download_name=f"bmm-ticket-{artifact.membership_number}.png")

    def ticket_print(self, token: str):
        return self.ticket_builder.render_printable(self._ticket_for(token))

    # Check-in desk

    def _evict_idle_stations(self) -> None:
        ttl = self.config['CHECKIN_STATION_TTL']
        now = self.clock()
        with self._stations_lock:
            idle = [station_id for station_id, last_used in self._station_last_used.items()
                    if now - last_used >= ttl]
            evicted = [self.stations.pop(station_id) for station_id in idle]
            for station_id in idle:
                del self._station_last_used[station_id]

        for station in evicted:
            logger.info("Closing check-in session for event %s after %.0fs idle", station.context.event_id, ttl)
            station.close()

    def _station(self) -> CheckinStation:
        self._evict_idle_stations()
        station_id = session.get("station_id", "")
        with self._stations_lock:
            station = self.stations.get(station_id)
            if station is not None:
                self._station_last_used[station_id] = self.clock()
        if station is None:
            raise NoEventSelectedException()
        return station

    def _scan_response(self, result: Optional[CheckinResult], station: CheckinStation):
        notice = station.last_notice
        return {
            "status": result.status.value if result else "ignored",
            "result": result.to_dict() if result else None,
            "notice": notice.to_dict() if notice else None,
            "stats": dict(station.stats),
        }

    def open_checkin(self):
        """
        Open a scanning session

        Body: ``eventId`` and optionally ``venue``, ``adminName``,
        ``adminEmail``, ``adminToken`` and ``variant``. A venue scanner link
        (``adminToken``) is validated before the session is usable.

        Returns:
            JSON station snapshot
        """
        self._evict_idle_stations()
        body = self._json_body()
        event_id = body.get("eventId")
        if event_id in (None, ""):
            raise NoEventSelectedException()

        variant = body.get("variant") or (CheckinVariant.VENUE.value if body.get("adminToken") else None)
        try:
            variant = CheckinVariant(variant) if variant else CheckinVariant.ADMIN_QR
        except ValueError:
            raise DataValidationException("variant", f"Unknown check-in variant '{variant}'")

        context = CheckinContext(
            event_id=str(event_id),
            venue=body.get("venue"),
            admin_name=body.get("adminName") or "Venue Admin",
            admin_email=body.get("adminEmail") or "admin@bmm.com",
            admin_token=body.get("adminToken"),
            variant=variant,
        )
        station_id = uuid.uuid4().hex
        station = CheckinStation(
            self.pipeline, context,
            suppressor=self._create_suppressor(f"{context.event_id}:{station_id}"),
            log=CheckinLog(worksheet=self._checkin_worksheet(), batch_size=self.config['CHECKIN_SHEET_BATCH']),
            idle_ms=self.config['KEYSTROKE_IDLE_MS'],
            min_length=self.config['KEYSTROKE_MIN_LENGTH'],
        )
        station.validate_link()

        self._close_station()
        with self._stations_lock:
            self.stations[station_id] = station
            self._station_last_used[station_id] = self.clock()
        session["station_id"] = station_id
        logger.info("Opened %s check-in session for event %s", variant.value, context.event_id)
        return station.snapshot(), 201

    def _close_station(self) -> bool:
        station_id = session.pop("station_id", "")
        with self._stations_lock:
            station = self.stations.pop(station_id, None)
            self._station_last_used.pop(station_id, None)
        if station is None:
            return False
        station.close()
        return True

    def close_checkin(self):
        return {"status": "closed" if self._close_station() else "no_session"}

    def checkin_scan(self):
        """
        Submit decoded text: ``{"data": "...", "source": "camera"}``
        """
        station = self._station()
        body = self._json_body()
        data = body.get("data") or body.get("qrData")
        if not isinstance(data, str) or not data.strip():
            raise DataValidationException("data", "Scanned data is required")
        try:
            source = ScanSource(body.get("source") or ScanSource.CAMERA.value)
        except ValueError:
            raise DataValidationException("source", f"Unknown scan source '{body.get('source')}'")
        return self._scan_response(station.handle_decoded(data, source), station)

    def checkin_upload(self):
        station = self._station()
        upload = request.files.get("image")
        if upload is None:
            raise DataValidationException("image", "Please choose an image containing a QR code")
        return self._scan_response(station.scan_image(upload.read()), station)

    def checkin_camera(self):
        station = self._station()
        return self._scan_response(station.scan_with_camera(self.camera_factory()), station)

    def checkin_keystroke(self):
        """
        Key events from a hardware scanner

        Body: ``{"keys": ["A", "B", "Enter"]}`` or ``{"key": "A"}``, with
        optional ``focusedElement`` and ``modalOpen``.
        """
        station = self._station()
        body = self._json_body()
        keys = body.get("keys")
        if keys is None:
            keys = [body.get("key")] if body.get("key") else []
        if not isinstance(keys, list):
            raise DataValidationException("keys", "Expected a list of key names")

        result = None
        for key in keys:
            completed = station.press_key(str(key), focused_element=body.get("focusedElement"),
                                          modal_open=bool(body.get("modalOpen")))
            if completed is not None:
                result = completed
        response = self._scan_response(result, station)
        response["buffer"] = station.keystrokes.buffer
        return response

    def checkin_manual(self):
        station = self._station()
        result = station.manual_checkin(self._json_body().get("membershipNumber"))
        return self._scan_response(result, station)

    def checkin_stats(self):
        return self._station().snapshot()

    def run(self, host: str = '127.0.0.1', port: int = 5000, debug: bool = None) -> None:
        """
        Run the Flask application

        Args:
            host: Host address to bind to
            port: Port number to listen on
            debug: Debug mode (overrides config if provided)
        """
        if debug is not None:
            self.app.config['DEBUG'] = debug

        self.app.run(host=host, port=port, debug=self.app.config['DEBUG'])


def create_app(config: Optional[dict] = None, **kwargs) -> BMMPortalApp:
    """
    Factory function to create and configure the application

    Args:
        config: Optional configuration dictionary
        **kwargs: Collaborators passed to BMMPortalApp (backend, flow_repository, ...)

    Returns:
        Configured BMMPortalApp instance
    """
    return BMMPortalApp(config, **kwargs)


def create_development_app() -> BMMPortalApp:
    """
    Create application configured for development

    Returns:
        BMMPortalApp configured for development
    """
    dev_config = {
        'DEBUG': True,
        'SECRET_KEY': 'dev-secret-key-change-in-production',
        'STORAGE': 'json',
        'LOG_LEVEL': 'DEBUG',
    }
    return create_app(dev_config)


def create_production_app() -> BMMPortalApp:
    """
    Create application configured for production

    The secret key, API token and Redis URL come from the environment.

    Returns:
        BMMPortalApp configured for production
    """
    prod_config = {
        'DEBUG': False,
        'STORAGE': 'redis',
        'LOG_FILE': 'bmm_portal.log',
    }
    return create_app(prod_config)


if __name__ == "__main__":
    # Create and run the application
    app = create_development_app()
    app.run(debug=True)
