"""
Venue configuration and session resolution

The venue asset (``data/bmm_venues.json``) is loaded once into an immutable
VenueConfig that is handed to the resolver and the ticket builder. Session
resolution is a pure function of (forum, stated preference).
"""

import json
import logging
import os
from dataclasses import dataclass
from datetime import date
from enum import Enum
from functools import lru_cache
from types import MappingProxyType
from typing import Any, FrozenSet, List, Mapping, Optional

from .exceptions import DataValidationException
from .models import SessionSlot, TimePreference
from .repositories import JSONRepository

logger = logging.getLogger(__name__)

DEFAULT_VENUE_CONFIG_PATH = os.path.join(os.path.dirname(__file__), "data", "bmm_venues.json")


class VenueClass(Enum):
    """Session availability class of a forum"""
    SINGLE_SESSION = "single_session"
    MORNING_LUNCH = "morning_lunch"
    MORNING_AFTERNOON = "morning_afternoon"
    FULL = "full"


ALLOWED_SLOTS = {
    VenueClass.MORNING_LUNCH: frozenset({SessionSlot.MORNING, SessionSlot.LUNCHTIME}),
    VenueClass.MORNING_AFTERNOON: frozenset({SessionSlot.MORNING, SessionSlot.AFTERNOON}),
    VenueClass.FULL: frozenset(SessionSlot),
}


@dataclass(frozen=True)
class VenueInfo:
    venue: str
    address: str
    date: str


@dataclass(frozen=True)
class VenueConfig:
    """
    Immutable venue data for one BMM round

    Attributes:
        event_name: Display name of the meeting
        event_year: Year used when a venue date omits it
        default_event_date: Calendar fallback date
        timezone: IANA zone the venue times are expressed in
        checkin_url_base: Prefix of the check-in URL embedded in QR payloads
        special_vote_regions: Regions whose members may request a special vote
        single_session: Forum to its only session slot
        morning_lunch: Forums offering 10:30 and 12:30 only
        morning_afternoon: Forums offering 10:30 and 2:30 only
        venues: Forum to venue name, address and date
    """
    event_name: str
    event_year: int
    default_event_date: date
    timezone: str
    checkin_url_base: str
    special_vote_regions: FrozenSet[str]
    single_session: Mapping[str, SessionSlot]
    morning_lunch: FrozenSet[str]
    morning_afternoon: FrozenSet[str]
    venues: Mapping[str, VenueInfo]

    @classmethod
    def from_dict(cls, data: dict) -> 'VenueConfig':
        """
        Build a config from the JSON asset's structure

        Raises:
            DataValidationException: If a single-session time is not a known slot
        """
        sessions = data.get("sessions", {})
        single = {}
        for forum, label in sessions.get("single_session", {}).items():
            slot = SessionSlot.from_label(label)
            if slot is None:
                raise DataValidationException("sessions.single_session", f"Unknown session '{label}' for {forum}")
            single[forum] = slot

        venues = {
            forum: VenueInfo(venue=info.get("venue", ""), address=info.get("address", ""), date=info.get("date", ""))
            for forum, info in data.get("venues", {}).items()
        }

        return cls(
            event_name=data.get("event_name", "Biennial Membership Meeting"),
            event_year=int(data.get("event_year", date.today().year)),
            default_event_date=date.fromisoformat(data.get("default_event_date", date.today().isoformat())),
            timezone=data.get("timezone", "Pacific/Auckland"),
            checkin_url_base=data.get("checkin_url_base", "").rstrip("/"),
            special_vote_regions=frozenset(data.get("special_vote_regions", [])),
            single_session=MappingProxyType(single),
            morning_lunch=frozenset(sessions.get("morning_lunch", [])),
            morning_afternoon=frozenset(sessions.get("morning_afternoon", [])),
            venues=MappingProxyType(venues),
        )

    def venue_class(self, forum: Optional[str]) -> VenueClass:
        if forum in self.single_session:
            return VenueClass.SINGLE_SESSION
        if forum in self.morning_afternoon:
            return VenueClass.MORNING_AFTERNOON
        if forum in self.morning_lunch:
            return VenueClass.MORNING_LUNCH
        return VenueClass.FULL

    def allowed_slots(self, forum: Optional[str]) -> FrozenSet[SessionSlot]:
        venue_class = self.venue_class(forum)
        if venue_class is VenueClass.SINGLE_SESSION:
            return frozenset({self.single_session[forum]})
        return ALLOWED_SLOTS[venue_class]

    def venue_for(self, forum: Optional[str]) -> Optional[VenueInfo]:
        if not forum:
            return None
        return self.venues.get(forum)


def load_venue_config(path: str = None) -> VenueConfig:
    """
    Load the venue asset from disk

    Args:
        path: JSON file path, defaults to the asset shipped with the package

    Returns:
        VenueConfig instance
    """
    path = path or DEFAULT_VENUE_CONFIG_PATH
    data = JSONRepository(path).load_data()
    if not data:
        raise DataValidationException("venue_config", f"No venue configuration found at {path}")
    config = VenueConfig.from_dict(data)
    logger.info("Loaded venue configuration for %d forums from %s", len(config.venues), path)
    return config


@lru_cache(maxsize=1)
def default_venue_config() -> VenueConfig:
    """The shipped venue asset, loaded once per process"""
    return load_venue_config()


def parse_preferences(payload: Any) -> Optional[List[TimePreference]]:
    """
    Parse a stored preference payload

    Args:
        payload: JSON text such as '["morning"]', an already decoded list, or None

    Returns:
        The recognised tags (possibly empty) if a list was present,
        None when there is no usable preference at all (absent or malformed)
    """
    if payload is None or payload == "":
        return None
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return None
    if isinstance(payload, str):
        payload = [payload]
    if not isinstance(payload, (list, tuple)):
        return None
    parsed = [TimePreference.parse(tag) for tag in payload]
    return [tag for tag in parsed if tag is not None]


def resolve_session(forum_name: Optional[str], preferred_times_payload: Any = None,
                    config: VenueConfig = None) -> SessionSlot:
    """
    Resolve the session slot a member is assigned to

    First match wins: a single-session forum always gets its slot; two-session
    forums fall back to the nearest offered slot; full venues honour any
    stated preference and default to lunchtime when a list was given but
    nothing in it matched. Without any preference the morning slot is used.

    Args:
        forum_name: The member's forum
        preferred_times_payload: Serialized list of preference tags, may be malformed
        config: Venue configuration, defaults to the shipped asset

    Returns:
        SessionSlot
    """
    config = config or default_venue_config()
    venue_class = config.venue_class(forum_name)

    if venue_class is VenueClass.SINGLE_SESSION:
        return config.single_session[forum_name]

    tags = parse_preferences(preferred_times_payload)
    if tags is None:
        return SessionSlot.MORNING

    wants_morning = TimePreference.MORNING in tags
    wants_lunch = TimePreference.LUNCHTIME in tags
    wants_afternoon = any(tag.is_afternoon_family for tag in tags)

    if venue_class is VenueClass.MORNING_AFTERNOON:
        if wants_morning:
            return SessionSlot.MORNING
        if wants_afternoon:
            return SessionSlot.AFTERNOON
        return SessionSlot.MORNING

    if venue_class is VenueClass.MORNING_LUNCH:
        if wants_morning:
            return SessionSlot.MORNING
        if wants_lunch or wants_afternoon:
            return SessionSlot.LUNCHTIME
        return SessionSlot.MORNING

    if wants_morning:
        return SessionSlot.MORNING
    if wants_lunch:
        return SessionSlot.LUNCHTIME
    if wants_afternoon:
        return SessionSlot.AFTERNOON
    # A preference list was stated but none of it is a known session
    return SessionSlot.LUNCHTIME


def time_span_for(session_label: Any) -> str:
    """
    Two-hour display window of a session

    Args:
        session_label: SessionSlot, "10:30 AM", "14:30", ...

    Returns:
        The window text; unknown labels get the morning window
    """
    slot = SessionSlot.from_label(session_label)
    return (slot or SessionSlot.MORNING).time_span
