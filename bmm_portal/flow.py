"""
Member registration and preference flow

An explicit state machine: each state accepts a fixed set of events and
every handler only moves the state once its backend calls succeeded, so a
failed call leaves the flow where it was and the member can retry.

    PREFERENCE_FORM
        -> PREFERENCE_SUBMITTED -> AWAITING_ATTENDANCE_CHOICE
    AWAITING_ATTENDANCE_CHOICE
        -> ATTENDING_CONFIRMED
        -> ABSENCE_REASON_PENDING -> [SPECIAL_VOTE_PROMPT] -> TERMINAL
"""

import json
import logging
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .backend import BackendClient
from .exceptions import BackendException, DataValidationException, InvalidTransitionException
from .models import AbsenceReason, AttendanceIntention, Member, Notice, NoticeLevel, TicketArtifact, TimePreference
from .services import TicketService
from .venues import VenueConfig, default_venue_config

logger = logging.getLogger(__name__)

FINANCIAL_FIELDS = (
    "name", "primaryEmail", "dob", "postalAddress", "phoneHome", "telephoneMobile",
    "phoneWork", "employer", "payrollNumber", "siteCode", "employmentStatus",
    "department", "jobTitle", "location",
)


class FlowState(Enum):
    PREFERENCE_FORM = "preference_form"
    PREFERENCE_SUBMITTED = "preference_submitted"
    AWAITING_ATTENDANCE_CHOICE = "awaiting_attendance_choice"
    ATTENDING_CONFIRMED = "attending_confirmed"
    ABSENCE_REASON_PENDING = "absence_reason_pending"
    SPECIAL_VOTE_PROMPT = "special_vote_prompt"
    TERMINAL = "terminal"


class FlowEvent(Enum):
    SUBMIT_PREFERENCES = "submit_preferences"
    CONFIRM_ATTENDANCE = "confirm_attendance"
    DECLINE_ATTENDANCE = "decline_attendance"
    SUBMIT_ABSENCE = "submit_absence"
    ANSWER_SPECIAL_VOTE = "answer_special_vote"


def _parse_yes_no(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ("yes", "true"):
            return True
        if text in ("no", "false"):
            return False
    return None


class MemberFlow:
    """
    One member's progress through the BMM preference flow

    Attributes:
        member: The member record, updated as the flow progresses
        state: Current FlowState
        ticket: Ticket built after preferences were submitted
        absence_reason: Chosen AbsenceReason once declined
        absence_details: Free text for the "other" reason
        special_vote: Special vote answer, None until asked
        notices: Notices produced by the most recent dispatch
    """

    def __init__(self, member: Member, backend: BackendClient, ticket_service: TicketService,
                 config: VenueConfig = None, state: FlowState = FlowState.PREFERENCE_FORM):
        self.member = member
        self.backend = backend
        self.ticket_service = ticket_service
        self.config = config or default_venue_config()
        self.state = state
        self.ticket: Optional[TicketArtifact] = None
        self.absence_reason: Optional[AbsenceReason] = None
        self.absence_details: Optional[str] = None
        self.special_vote: Optional[bool] = None
        self.notices: List[Notice] = []

        self._handlers: Dict[FlowState, Dict[FlowEvent, Callable]] = {
            FlowState.PREFERENCE_FORM: {FlowEvent.SUBMIT_PREFERENCES: self._submit_preferences},
            FlowState.AWAITING_ATTENDANCE_CHOICE: {
                FlowEvent.CONFIRM_ATTENDANCE: self._confirm_attendance,
                FlowEvent.DECLINE_ATTENDANCE: self._decline_attendance,
                # Preferences may be resubmitted; the backend overwrites them
                FlowEvent.SUBMIT_PREFERENCES: self._submit_preferences,
            },
            FlowState.ABSENCE_REASON_PENDING: {FlowEvent.SUBMIT_ABSENCE: self._submit_absence},
            FlowState.SPECIAL_VOTE_PROMPT: {
                FlowEvent.ANSWER_SPECIAL_VOTE: self._answer_special_vote,
                FlowEvent.SUBMIT_ABSENCE: self._submit_absence,
            },
        }

    @property
    def special_vote_eligible(self) -> bool:
        return self.member.is_special_vote_eligible(self.config.special_vote_regions)

    @property
    def allowed_events(self) -> List[str]:
        return [event.value for event in self._handlers.get(self.state, {})]

    def dispatch(self, event: Any, **payload) -> FlowState:
        """
        Apply one event to the flow

        Args:
            event: FlowEvent or its string value
            **payload: Event arguments

        Returns:
            The state after the event

        Raises:
            InvalidTransitionException: If the current state does not accept the event
            DataValidationException: If the payload is invalid; nothing was sent
            BackendException: If a backend call failed; the state is unchanged
        """
        try:
            event = FlowEvent(event)
        except ValueError:
            raise InvalidTransitionException(self.state.value, str(event))

        handler = self._handlers.get(self.state, {}).get(event)
        if handler is None:
            raise InvalidTransitionException(self.state.value, event.value)

        self.notices = []
        previous = self.state
        try:
            handler(**payload)
        except BackendException as e:
            self.state = previous
            self.notices.append(Notice(NoticeLevel.ERROR, e.message))
            logger.error("Flow for %s stayed in %s after %s failed: %s",
                         self.member.membership_number, previous.value, event.value, e)
            raise
        if self.state is not previous:
            logger.info("Flow for %s: %s -> %s", self.member.membership_number, previous.value, self.state.value)
        return self.state

    # Convenience wrappers

    def submit_preferences(self, **payload) -> FlowState:
        return self.dispatch(FlowEvent.SUBMIT_PREFERENCES, **payload)

    def confirm_attendance(self) -> FlowState:
        return self.dispatch(FlowEvent.CONFIRM_ATTENDANCE)

    def decline_attendance(self) -> FlowState:
        return self.dispatch(FlowEvent.DECLINE_ATTENDANCE)

    def submit_absence(self, reason: Any, details: str = None, special_vote: Any = None) -> FlowState:
        return self.dispatch(FlowEvent.SUBMIT_ABSENCE, reason=reason, details=details, special_vote=special_vote)

    def answer_special_vote(self, choice: Any) -> FlowState:
        return self.dispatch(FlowEvent.ANSWER_SPECIAL_VOTE, choice=choice)

    # Handlers

    def _submit_preferences(self, intend_to_attend: Any = None, preferred_venues: List[str] = None,
                            preferred_dates: List[str] = None, preferred_times: List[str] = None,
                            workplace_info: str = None, additional_comments: str = None,
                            suggested_venue: str = None, special_vote: Any = None,
                            financial_form: Dict = None) -> None:
        intention = AttendanceIntention.from_value(intend_to_attend)
        if intention is AttendanceIntention.UNSET:
            raise DataValidationException("intendToAttend", "Please indicate whether you intend to attend")

        tags = []
        for tag in preferred_times or []:
            parsed = TimePreference.parse(tag)
            if parsed is None:
                raise DataValidationException("preferredTimes", f"Unknown time preference '{tag}'")
            tags.append(parsed.value)

        form = None
        if financial_form:
            form = {key: str(value).strip() for key, value in financial_form.items()
                    if key in FINANCIAL_FIELDS and value is not None}
            if "name" in form and not form["name"]:
                raise DataValidationException("name", "Name cannot be empty")

        payload = {
            "memberToken": self.member.token,
            "preferredVenues": list(preferred_venues or []),
            "preferredDates": list(preferred_dates or []),
            "preferredTimes": tags,
            "intendToAttend": intention.as_json(),
            "workplaceInfo": workplace_info or "",
            "additionalComments": additional_comments or "",
            "suggestedVenue": suggested_venue or "",
            "preferenceSpecialVote": _parse_yes_no(special_vote),
        }
        self.backend.submit_preferences(payload)
        if form:
            self.backend.update_financial_form(self.member.token, form)

        self.member.intend_to_attend = intention
        self.member.preferred_times = json.dumps(tags) if tags else self.member.preferred_times
        if form:
            self.member.financial.update(form)
            self.member.email = form.get("primaryEmail") or self.member.email
            self.member.mobile = form.get("telephoneMobile") or self.member.mobile
        self.state = FlowState.PREFERENCE_SUBMITTED

        self.ticket, notice = self.ticket_service.prepare_ticket(self.member)
        self.notices.append(Notice(NoticeLevel.SUCCESS, "Your preferences have been saved."))
        self.notices.append(notice)
        self.state = FlowState.AWAITING_ATTENDANCE_CHOICE

    def _confirm_attendance(self) -> None:
        self.backend.confirm_attendance(self.member.token)
        self.member.intend_to_attend = AttendanceIntention.YES
        self.state = FlowState.ATTENDING_CONFIRMED
        self.notices.append(Notice(NoticeLevel.SUCCESS, "Thank you, your attendance is confirmed."))

        if not self.member.has_deliverable_email or self.member.member_id is None:
            return
        try:
            self.backend.send_ticket_email(self.member.member_id)
        except BackendException as e:
            logger.warning("Ticket email for %s failed: %s", self.member.membership_number, e)
            self.notices.append(Notice(NoticeLevel.INFO,
                                       "We could not email your ticket. Please save it from this page."))
        else:
            self.notices.append(Notice(NoticeLevel.INFO, f"Your ticket has been sent to {self.member.email}."))

    def _decline_attendance(self) -> None:
        self.state = FlowState.ABSENCE_REASON_PENDING

    def _submit_absence(self, reason: Any = None, details: str = None, special_vote: Any = None) -> None:
        try:
            reason = AbsenceReason(reason.value if isinstance(reason, AbsenceReason) else str(reason).strip().lower())
        except ValueError:
            raise DataValidationException("absenceReason", "Please select a reason for not attending")

        details = (details or "").strip()
        if reason is AbsenceReason.OTHER and not details:
            raise DataValidationException("absenceDetails", "Please tell us why you cannot attend")

        needs_vote = self.special_vote_eligible and reason is not AbsenceReason.OTHER
        vote = _parse_yes_no(special_vote) if needs_vote else False
        if needs_vote and vote is None:
            if special_vote not in (None, ""):
                raise DataValidationException("isSpecialVote", "Please answer yes or no")
            self.absence_reason = reason
            self.absence_details = details or None
            self.state = FlowState.SPECIAL_VOTE_PROMPT
            return

        self._post_non_attendance(reason, details, vote)

    def _answer_special_vote(self, choice: Any = None) -> None:
        vote = _parse_yes_no(choice)
        if vote is None:
            raise DataValidationException("isSpecialVote", "Please answer yes or no")
        self._post_non_attendance(self.absence_reason, self.absence_details or "", vote)

    def _post_non_attendance(self, reason: AbsenceReason, details: str, vote: bool) -> None:
        self.backend.record_non_attendance(self.member.token, {
            "isAttending": False,
            "attendanceChoice": "not_attending",
            "absenceReason": details if reason is AbsenceReason.OTHER else reason.value,
            "isSpecialVote": vote,
        })
        self.member.intend_to_attend = AttendanceIntention.NO
        self.absence_reason = reason
        self.absence_details = details or None
        self.special_vote = vote
        self.state = FlowState.TERMINAL
        message = "Thank you for letting us know."
        if vote:
            message += " Your special vote request has been recorded."
        self.notices.append(Notice(NoticeLevel.SUCCESS, message))

    # Persistence

    def to_dict(self) -> Dict:
        return {
            "state": self.state.value,
            "member": self.member.to_dict(),
            "ticket": self.ticket.to_dict() if self.ticket else None,
            "absenceReason": self.absence_reason.value if self.absence_reason else None,
            "absenceDetails": self.absence_details,
            "specialVote": self.special_vote,
        }

    @classmethod
    def from_dict(cls, data: Dict, backend: BackendClient, ticket_service: TicketService,
                  config: VenueConfig = None) -> 'MemberFlow':
        """
        Restore a flow saved with ``to_dict``

        Args:
            data: Saved flow record
            backend: Event backend client
            ticket_service: Ticket service
            config: Venue configuration

        Returns:
            MemberFlow instance
        """
        member_data = data["member"]
        flow = cls(Member.from_dict(member_data, token=member_data.get("token")), backend, ticket_service,
                   config=config, state=FlowState(data["state"]))
        if data.get("ticket"):
            flow.ticket = TicketArtifact.from_dict(data["ticket"])
        if data.get("absenceReason"):
            flow.absence_reason = AbsenceReason(data["absenceReason"])
        flow.absence_details = data.get("absenceDetails")
        flow.special_vote = data.get("specialVote")
        return flow

    def view(self) -> Dict:
        """Flow state for the member pages"""
        return {
            "state": self.state.value,
            "allowedEvents": self.allowed_events,
            "member": {
                "name": self.member.name,
                "membershipNumber": self.member.membership_number,
                "region": self.member.region,
                "forum": self.member.forum,
                "intendToAttend": self.member.intend_to_attend.as_json(),
            },
            "specialVoteEligible": self.special_vote_eligible,
            "ticket": self.ticket.to_dict() if self.ticket else None,
            "notices": [notice.to_dict() for notice in self.notices],
        }
