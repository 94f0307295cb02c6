"""
REST client for the event backend

Every backend response is a JSON envelope ``{status, message?, data?}``.
Anything other than ``status == "success"`` is a failure even when the HTTP
status is 200; check-in endpoints additionally answer ``warning`` for members
who are already checked in, so those calls return the envelope as-is and
leave classification to the check-in pipeline.
"""

import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import requests

from .exceptions import BackendException, MemberNotFoundException

logger = logging.getLogger(__name__)


class BackendClient:
    """
    Thin wrapper around a requests.Session bound to the backend base URL
    """

    def __init__(self, base_url: str, api_token: Optional[str] = None, timeout: float = 10.0,
                 session: Optional[requests.Session] = None):
        """
        Initialize backend client

        Args:
            base_url: API root, e.g. https://events.etu.nz/api
            api_token: Bearer token for admin endpoints
            timeout: Per-request timeout in seconds
            session: Optional pre-configured session
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_token:
            self.session.headers.update({"Authorization": f"Bearer {api_token}"})

    def _request(self, method: str, path: str, json: Any = None, params: Dict = None) -> Dict:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, json=json, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise BackendException(f"Could not reach the event backend: {e}")

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code >= 400:
            server_message = body.get("message") if isinstance(body, dict) else None
            if response.status_code == 401:
                logger.warning("%s %s rejected the admin token", method, path)
            else:
                logger.error("%s %s returned HTTP %s: %s", method, path, response.status_code, server_message)
            raise BackendException(
                f"Backend returned HTTP {response.status_code}",
                status_code=response.status_code,
                server_message=server_message,
            )

        if not isinstance(body, dict):
            raise BackendException("Backend returned a response that is not a JSON object",
                                   status_code=response.status_code)

        logger.debug("%s %s -> %s", method, path, body.get("status"))
        return body

    @staticmethod
    def _expect_success(envelope: Dict, action: str) -> Dict:
        if envelope.get("status") != "success":
            raise BackendException(f"{action} failed", status_code=200, server_message=envelope.get("message"))
        return envelope

    # Member self-service

    def get_member(self, token: str) -> Dict:
        """
        Load a member by their access token

        Raises:
            MemberNotFoundException: If the backend has no member for the token
        """
        try:
            envelope = self._request("GET", f"/event-registration/member/{quote(token, safe='')}")
        except BackendException as e:
            if e.status_code == 404:
                raise MemberNotFoundException(token)
            raise
        if envelope.get("status") != "success" or not envelope.get("data"):
            raise MemberNotFoundException(token)
        return envelope["data"]

    def submit_preferences(self, payload: Dict) -> Dict:
        return self._expect_success(self._request("POST", "/bmm/preferences", json=payload),
                                    "Submitting preferences")

    def update_financial_form(self, member_token: str, financial_form: Dict) -> Dict:
        payload = {"memberToken": member_token, "financialForm": financial_form}
        return self._expect_success(self._request("POST", "/bmm/update-financial-form", json=payload),
                                    "Updating financial details")

    def confirm_attendance(self, member_token: str) -> Dict:
        payload = {"memberToken": member_token, "isAttending": True}
        return self._expect_success(self._request("POST", "/bmm/confirm-attendance", json=payload),
                                    "Confirming attendance")

    def record_non_attendance(self, member_token: str, details: Dict) -> Dict:
        payload = {"memberToken": member_token, **details}
        return self._expect_success(self._request("POST", "/bmm/non-attendance", json=payload),
                                    "Recording non-attendance")

    # Tickets

    def generate_ticket(self, member_id: Any) -> bool:
        """
        Ask the backend to generate (and email) a member's ticket

        Returns:
            True if a ticket now exists, including when it already existed

        Raises:
            BackendException: For any other failure
        """
        try:
            envelope = self._request("POST", f"/admin/ticket-emails/member/{member_id}/generate-and-send")
        except BackendException as e:
            if e.already_exists:
                logger.info("Ticket for member %s already exists", member_id)
                return True
            raise
        if envelope.get("status") == "success":
            return True
        message = envelope.get("message") or ""
        if "already exists" in message:
            return True
        raise BackendException("Ticket generation failed", status_code=200, server_message=message or None)

    def send_ticket_email(self, member_id: Any) -> Dict:
        return self._expect_success(
            self._request("POST", f"/admin/ticket-emails/member/{member_id}/generate-and-send"),
            "Sending ticket email",
        )

    def fetch_ticket(self, token: str) -> Dict:
        envelope = self._expect_success(
            self._request("GET", f"/admin/ticket-emails/bmm-ticket/{quote(token, safe='')}"),
            "Fetching ticket",
        )
        return envelope.get("data") or {}

    # Check-in

    def checkin_qr(self, event_id: Any, qr_data: str, location: str, admin_name: str, admin_email: str) -> Dict:
        payload = {"qrData": qr_data, "location": location, "adminName": admin_name, "adminEmail": admin_email}
        return self._request("POST", f"/admin/events/{event_id}/checkin/qr", json=payload)

    def checkin_venue(self, event_id: Any, admin_token: str, venue: str, qr_data: str, location: str,
                      admin_name: str, admin_email: str) -> Dict:
        payload = {"qrData": qr_data, "location": location, "adminName": admin_name, "adminEmail": admin_email}
        params = {"adminToken": admin_token, "venue": venue}
        return self._request("POST", f"/venue/checkin/scan/{event_id}", json=payload, params=params)

    def checkin_manual(self, membership_number: str, event_id: Any, location: str, venue: str = None,
                       token: str = None) -> Dict:
        """
        Check a member in by membership number

        The backend looks the member up by ``membershipNumber`` and falls back
        to ``token`` when no member has that number.
        """
        payload = {
            "membershipNumber": membership_number,
            "eventId": event_id,
            "location": location,
            "venue": venue or location,
        }
        if token:
            payload["token"] = token
        return self._request("POST", "/admin/checkin/manual", json=payload)

    def validate_venue_link(self, token: str, event_id: Any, venue: str) -> Dict:
        """
        Validate a venue scanner link

        Returns:
            The ``data`` of the envelope, holding ``event`` and ``stats``
        """
        params = {"token": token, "eventId": event_id, "venue": venue}
        envelope = self._expect_success(self._request("GET", "/venue/checkin/validate", params=params),
                                        "Validating scan link")
        return envelope.get("data") or {}
