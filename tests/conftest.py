import io

import pytest
from PIL import Image

from bmm_portal.app import create_app
from bmm_portal.exceptions import BackendException, MemberNotFoundException
from bmm_portal.models import Member
from bmm_portal.repositories import InMemoryRepository
from bmm_portal.retry import RetryPolicy, fixed_backoff
from bmm_portal.services import TicketService
from bmm_portal.tickets import TicketBuilder
from bmm_portal.venues import load_venue_config


class ManualClock:
    """Monotonic clock advanced by hand, in whole milliseconds"""

    def __init__(self, start_ms: int = 0):
        self.ms = start_ms

    def advance(self, ms: int) -> None:
        self.ms += ms

    def __call__(self) -> float:
        return self.ms / 1000.0


class FakeBackend:
    """
    Stand-in for BackendClient that records every call

    ``failures`` maps a method name to the exception it should raise.
    """

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.members = {}
        self.tickets = {}
        self.checkin_responses = []
        self.validation = {
            "event": {"id": 7, "name": "BMM Wellington"},
            "stats": {"totalMembers": 120, "checkedIn": 5},
        }

    def _record(self, name, *args):
        self.calls.append((name, args))
        if name in self.failures:
            raise self.failures[name]

    def call_names(self):
        return [name for name, _ in self.calls]

    def calls_to(self, name):
        return [args for call_name, args in self.calls if call_name == name]

    def get_member(self, token):
        self._record("get_member", token)
        if token not in self.members:
            raise MemberNotFoundException(token)
        return dict(self.members[token])

    def submit_preferences(self, payload):
        self._record("submit_preferences", payload)
        return {"status": "success"}

    def update_financial_form(self, member_token, financial_form):
        self._record("update_financial_form", member_token, financial_form)
        return {"status": "success"}

    def confirm_attendance(self, member_token):
        self._record("confirm_attendance", member_token)
        return {"status": "success"}

    def record_non_attendance(self, member_token, details):
        self._record("record_non_attendance", member_token, details)
        return {"status": "success"}

    def generate_ticket(self, member_id):
        self._record("generate_ticket", member_id)
        return True

    def send_ticket_email(self, member_id):
        self._record("send_ticket_email", member_id)
        return {"status": "success"}

    def fetch_ticket(self, token):
        self._record("fetch_ticket", token)
        if token not in self.tickets:
            raise BackendException("Backend returned HTTP 404", status_code=404, server_message="Ticket not found")
        return dict(self.tickets[token])

    def _checkin_response(self, location):
        if self.checkin_responses:
            return self.checkin_responses.pop(0)
        return {
            "status": "success",
            "data": {"memberName": "Jane Doe", "membershipNumber": "12345", "checkinLocation": location},
        }

    def checkin_qr(self, event_id, qr_data, location, admin_name, admin_email):
        self._record("checkin_qr", event_id, qr_data, location, admin_name, admin_email)
        return self._checkin_response(location)

    def checkin_venue(self, event_id, admin_token, venue, qr_data, location, admin_name, admin_email):
        self._record("checkin_venue", event_id, admin_token, venue, qr_data, location, admin_name, admin_email)
        return self._checkin_response(location)

    def checkin_manual(self, membership_number, event_id, location, venue=None, token=None):
        self._record("checkin_manual", membership_number, event_id, location, venue, token)
        return self._checkin_response(location)

    def validate_venue_link(self, token, event_id, venue):
        self._record("validate_venue_link", token, event_id, venue)
        return self.validation


MEMBER_JSON = {
    "id": 42,
    "membershipNumber": "12345",
    "name": "Jane Doe",
    "primaryEmail": "jane@example.com",
    "telephoneMobile": "021 555 0100",
    "regionDesc": "Central Region",
    "forumDesc": "Wellington 1",
    "preferredTimesJson": '["morning"]',
}


@pytest.fixture
def png():
    buffer = io.BytesIO()
    Image.new("RGB", (32, 32), "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def clock():
    return ManualClock(start_ms=1000)


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.members["tok-123"] = dict(MEMBER_JSON)
    return fake


@pytest.fixture(scope="session")
def venue_config():
    return load_venue_config()


@pytest.fixture
def member():
    return Member.from_dict(MEMBER_JSON, token="tok-123")


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def ticket_builder(venue_config):
    return TicketBuilder(venue_config, portal_url="https://portal.test")


@pytest.fixture
def ticket_service(backend, ticket_builder, sleeps):
    policy = RetryPolicy(
        max_attempts=3,
        backoff=fixed_backoff(1.0),
        initial_delay=2.0,
        retry_on=(BackendException,),
        sleep=sleeps.append,
    )
    return TicketService(backend, ticket_builder, policy)


@pytest.fixture
def portal(backend, venue_config):
    return create_app(
        {
            "TESTING": True,
            "DEBUG": False,
            "STORAGE": "memory",
            "TICKET_FETCH_INITIAL_DELAY": 0.0,
            "TICKET_FETCH_RETRY_DELAY": 0.0,
        },
        backend=backend,
        flow_repository=InMemoryRepository(),
        venue_config=venue_config,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def client(portal):
    return portal.app.test_client()
