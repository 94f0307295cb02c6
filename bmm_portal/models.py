"""
Data Models for the BMM Portal

This module contains the data model classes that represent the core entities
of the Biennial Membership Meeting workflow: members, session slots, check-in
results and tickets. These classes use dataclasses for clean, type-safe data
representation and convert to and from the backend's camelCase JSON.
"""

from dataclasses import dataclass, asdict, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


PLACEHOLDER_EMAIL_DOMAIN = "@temp-email.etu.nz"


class AttendanceIntention(Enum):
    """Tri-state answer to "do you intend to attend?" """
    YES = "yes"
    NO = "no"
    UNSET = "unset"

    @classmethod
    def from_value(cls, value: Any) -> 'AttendanceIntention':
        """
        Normalize a form or JSON value to an intention

        Args:
            value: True/False/None, or one of the enum values as a string

        Returns:
            AttendanceIntention instance
        """
        if isinstance(value, cls):
            return value
        if value is None or value == "":
            return cls.UNSET
        if isinstance(value, bool):
            return cls.YES if value else cls.NO
        text = str(value).strip().lower()
        if text in ("yes", "true", "attending"):
            return cls.YES
        if text in ("no", "false", "not_attending"):
            return cls.NO
        return cls.UNSET

    def as_json(self) -> Optional[bool]:
        """Backend representation: a nullable boolean"""
        if self is AttendanceIntention.UNSET:
            return None
        return self is AttendanceIntention.YES


class TimePreference(Enum):
    """Time-of-day preference tags a member can state"""
    MORNING = "morning"
    LUNCHTIME = "lunchtime"
    AFTERNOON = "afternoon"
    AFTER_WORK = "after_work"
    NIGHT_SHIFT = "night_shift"

    @classmethod
    def parse(cls, tag: Any) -> Optional['TimePreference']:
        """
        Parse a stored tag, accepting "after work" as well as "after_work"

        Returns:
            TimePreference or None for unknown tags
        """
        if not isinstance(tag, str):
            return None
        normalized = tag.strip().lower().replace(" ", "_").replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return None

    @property
    def is_afternoon_family(self) -> bool:
        return self in (TimePreference.AFTERNOON, TimePreference.AFTER_WORK, TimePreference.NIGHT_SHIFT)


class SessionSlot(Enum):
    """The three fixed session start times of a BMM venue"""
    MORNING = "10:30 AM"
    LUNCHTIME = "12:30 PM"
    AFTERNOON = "2:30 PM"

    @property
    def label(self) -> str:
        return self.value

    @property
    def start_24h(self) -> str:
        return _SLOT_24H[self]

    @property
    def time_span(self) -> str:
        return _SLOT_SPANS[self]

    @classmethod
    def from_label(cls, label: Any) -> Optional['SessionSlot']:
        """
        Look a slot up by its display label or its 24-hour start time

        Args:
            label: "10:30 AM", "14:30", a SessionSlot, ...

        Returns:
            SessionSlot or None if the label is not one of the three slots
        """
        if isinstance(label, cls):
            return label
        if not isinstance(label, str):
            return None
        text = label.strip().upper()
        for slot in cls:
            if text in (slot.value.upper(), slot.start_24h):
                return slot
        return None


_SLOT_24H = {
    SessionSlot.MORNING: "10:30",
    SessionSlot.LUNCHTIME: "12:30",
    SessionSlot.AFTERNOON: "14:30",
}

_SLOT_SPANS = {
    SessionSlot.MORNING: "10:00 AM - 12:00 PM",
    SessionSlot.LUNCHTIME: "12:00 PM - 2:00 PM",
    SessionSlot.AFTERNOON: "2:00 PM - 4:00 PM",
}


class AbsenceReason(Enum):
    """Fixed reasons a member can give for not attending"""
    SICK = "sick"
    DISTANCE = "distance"
    WORK = "work"
    OTHER = "other"


class CheckinStatus(Enum):
    """Outcome discriminator of a check-in submission"""
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class CheckinVariant(Enum):
    """Backend endpoint family used to submit a check-in"""
    ADMIN_QR = "admin_qr"
    VENUE = "venue"
    MANUAL = "manual"


class ScanSource(Enum):
    """Where a decoded string came from"""
    CAMERA = "camera"
    UPLOAD = "upload"
    BARCODE = "barcode"
    MANUAL = "manual"

    @property
    def location_label(self) -> str:
        return {
            ScanSource.CAMERA: "Camera QR Scanner",
            ScanSource.UPLOAD: "Image Upload QR Scanner",
            ScanSource.BARCODE: "Barcode Scanner",
            ScanSource.MANUAL: "Manual Check-in",
        }[self]


class NoticeLevel(Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notice:
    """A user-visible message produced by a flow step or a scan"""
    level: NoticeLevel
    message: str

    def to_dict(self) -> Dict:
        return {"level": self.level.value, "message": self.message}


def first_present(data: Dict, *keys: str, default: Any = None) -> Any:
    """Return the first non-empty value among ``keys``"""
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return default


@dataclass
class Member:
    """
    Data model for a union member taking part in the BMM

    Represents one member as returned by the event backend, with the
    fields the preference flow and the ticket builder need.
    """
    membership_number: str
    name: str
    token: str
    member_id: Optional[int] = None
    email: Optional[str] = None
    mobile: Optional[str] = None
    region: Optional[str] = None
    forum: Optional[str] = None
    assigned_venue: Optional[str] = None
    venue_address: Optional[str] = None
    assigned_date: Optional[str] = None
    preferred_times: Optional[str] = None
    intend_to_attend: AttendanceIntention = AttendanceIntention.UNSET
    financial: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict, token: str = None) -> 'Member':
        """
        Create Member instance from the backend's member JSON

        Args:
            data: Dictionary as returned by /event-registration/member/{token}
            token: Member token used to fetch the record, if not in the data

        Returns:
            Member instance
        """
        venue = first_present(data, "assignedVenueFinal", "assignedVenue", "venue")
        venue_address = first_present(data, "venueAddress")
        assigned_date = first_present(data, "assignedDate")
        # Some records carry the assignment as an object instead of a name
        if isinstance(venue, dict):
            venue_address = venue_address or first_present(venue, "address")
            assigned_date = assigned_date or first_present(venue, "date")
            venue = first_present(venue, "venue", "name")

        intention = data.get("intendToAttend")
        return cls(
            membership_number=str(data.get("membershipNumber", "")).strip(),
            name=data.get("name") or "",
            token=token or first_present(data, "token", "memberToken", default=""),
            member_id=data.get("id"),
            email=first_present(data, "primaryEmail", "email"),
            mobile=first_present(data, "telephoneMobile", "mobile"),
            region=first_present(data, "regionDesc", "region"),
            forum=first_present(data, "forumDesc", "forum"),
            assigned_venue=venue,
            venue_address=venue_address,
            assigned_date=assigned_date,
            preferred_times=first_present(data, "preferredTimesJson"),
            intend_to_attend=AttendanceIntention.from_value(intention),
            financial=dict(data.get("financialForm") or {}),
        )

    def to_dict(self) -> Dict:
        """
        Convert member to the backend's camelCase representation

        Returns:
            Dictionary representation of the member
        """
        return {
            "id": self.member_id,
            "membershipNumber": self.membership_number,
            "name": self.name,
            "token": self.token,
            "primaryEmail": self.email,
            "telephoneMobile": self.mobile,
            "regionDesc": self.region,
            "forumDesc": self.forum,
            "assignedVenue": self.assigned_venue,
            "venueAddress": self.venue_address,
            "assignedDate": self.assigned_date,
            "preferredTimesJson": self.preferred_times,
            "intendToAttend": self.intend_to_attend.as_json(),
            "financialForm": dict(self.financial),
        }

    @property
    def has_deliverable_email(self) -> bool:
        """
        Check whether ticket emails can be sent to this member

        Returns:
            True if the email is present and not an import placeholder
        """
        if not self.email or not self.email.strip():
            return False
        return PLACEHOLDER_EMAIL_DOMAIN not in self.email

    def is_special_vote_eligible(self, eligible_regions: Iterable[str]) -> bool:
        """
        Check region-based special vote eligibility

        Args:
            eligible_regions: Region descriptions that may request a special vote

        Returns:
            True if the member's region is one of them
        """
        if not self.region:
            return False
        return self.region.strip().lower() in {r.lower() for r in eligible_regions}


@dataclass
class CheckinContext:
    """Active event, venue and acting admin for a scanning session"""
    event_id: Optional[str]
    venue: Optional[str] = None
    admin_name: str = "Venue Admin"
    admin_email: str = "admin@bmm.com"
    admin_token: Optional[str] = None
    variant: CheckinVariant = CheckinVariant.ADMIN_QR

    def location_for(self, source: ScanSource) -> str:
        """Location label sent with a check-in from ``source``"""
        if self.variant is CheckinVariant.VENUE and self.venue:
            return f"{self.venue} - BMM Venue Scanner"
        return source.location_label


@dataclass
class CheckinResult:
    """
    Data model for the outcome of one check-in submission

    A tagged union over CheckinStatus: success carries the member and
    where they checked in, warning carries where they had already checked
    in, error carries a message.
    """
    status: CheckinStatus
    token: Optional[str] = None
    member_name: Optional[str] = None
    membership_number: Optional[str] = None
    location: Optional[str] = None
    checkin_time: Optional[str] = None
    previous_location: Optional[str] = None
    previous_time: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def from_envelope(cls, envelope: Dict, token: str = None, location: str = None) -> 'CheckinResult':
        """
        Classify a backend check-in response

        Args:
            envelope: Response body with ``status``, ``message`` and ``data``
            token: Token that was submitted
            location: Location label that was submitted, used when the
                response does not echo one

        Returns:
            CheckinResult instance
        """
        status = envelope.get("status") if isinstance(envelope, dict) else None
        data = (envelope.get("data") if isinstance(envelope, dict) else None) or {}

        if status == CheckinStatus.SUCCESS.value:
            return cls(
                status=CheckinStatus.SUCCESS,
                token=token,
                member_name=first_present(data, "memberName", "name", default="Member"),
                membership_number=first_present(data, "membershipNumber", default="Unknown"),
                location=first_present(data, "checkinLocation", default=location or "Unknown location"),
                checkin_time=first_present(data, "checkinTime", "checkInTime"),
            )

        if status == CheckinStatus.WARNING.value:
            return cls(
                status=CheckinStatus.WARNING,
                token=token,
                member_name=first_present(data, "memberName", "name", default="Unknown Member"),
                membership_number=first_present(data, "membershipNumber", default="Unknown"),
                previous_location=first_present(data, "previousCheckinLocation", "checkInLocation",
                                         default="Unknown location"),
                previous_time=first_present(data, "previousCheckinTime", "checkInTime"),
                message=envelope.get("message"),
            )

        message = envelope.get("message") if isinstance(envelope, dict) else None
        return cls.failure(message or "Check-in failed, please try again", token=token)

    @classmethod
    def failure(cls, message: str, token: str = None) -> 'CheckinResult':
        return cls(status=CheckinStatus.ERROR, token=token, message=message)

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass
class CheckinLogEntry:
    """One line of the recent check-ins list shown at the desk"""
    member_name: str
    membership_number: str
    location: str
    checkin_time: str
    already_checked_in: bool = False
    source: Optional[str] = None

    @classmethod
    def from_result(cls, result: CheckinResult, source: ScanSource = None) -> 'CheckinLogEntry':
        """
        Build a log entry from a success or warning result

        Args:
            result: Classified check-in result
            source: Scan source, if known

        Returns:
            CheckinLogEntry instance
        """
        already = result.status is CheckinStatus.WARNING
        return cls(
            member_name=result.member_name or "Unknown Member",
            membership_number=result.membership_number or "Unknown",
            location=(result.previous_location if already else result.location) or "Unknown location",
            checkin_time=(result.previous_time if already else result.checkin_time)
            or datetime.now().isoformat(timespec="seconds"),
            already_checked_in=already,
            source=source.value if source else None,
        )

    def to_row(self) -> List[str]:
        """Spreadsheet row representation"""
        return [
            self.membership_number,
            self.member_name,
            self.location,
            self.checkin_time,
            "already_checked_in" if self.already_checked_in else "success",
            self.source or "",
        ]

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class TicketArtifact:
    """
    Data model for a member's BMM ticket

    Every display field is always populated, with literal placeholders
    where neither the server nor the venue table knows the value.
    """
    member_name: str
    membership_number: str
    region: str
    event_name: str
    venue: str
    venue_address: str
    date: str
    session: str
    time_span: str
    token: str
    qr_payload: str
    forum: Optional[str] = None
    placeholder: bool = False

    def to_dict(self) -> Dict:
        """
        Convert ticket to the camelCase form the portal pages use

        Returns:
            Dictionary representation of the ticket
        """
        return {
            "memberName": self.member_name,
            "membershipNumber": self.membership_number,
            "regionDesc": self.region,
            "eventName": self.event_name,
            "assignedVenue": self.venue,
            "venueAddress": self.venue_address,
            "assignedDate": self.date,
            "assignedSession": self.session,
            "timeSpan": self.time_span,
            "ticketToken": self.token,
            "qrPayload": self.qr_payload,
            "forumDesc": self.forum,
            "placeholder": self.placeholder,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'TicketArtifact':
        return cls(
            member_name=data["memberName"],
            membership_number=data["membershipNumber"],
            region=data["regionDesc"],
            event_name=data["eventName"],
            venue=data["assignedVenue"],
            venue_address=data["venueAddress"],
            date=data["assignedDate"],
            session=data["assignedSession"],
            time_span=data["timeSpan"],
            token=data["ticketToken"],
            qr_payload=data["qrPayload"],
            forum=data.get("forumDesc"),
            placeholder=bool(data.get("placeholder", False)),
        )
