"""
Ticket artifact builder

Builds the ticket a member shows at the door and its export formats
(shareable link, calendar event, QR image, printable page). Every
display field is filled from the server ticket first, then the member
record and the venue table, then a literal placeholder.
"""

import base64
import io
import json
import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Optional
from urllib.parse import quote

import qrcode
from flask import render_template_string

from .models import Member, SessionSlot, TicketArtifact, first_present
from .venues import VenueConfig, VenueInfo, default_venue_config, resolve_session, time_span_for

logger = logging.getLogger(__name__)

VENUE_PLACEHOLDER = "Venue to be confirmed"
ADDRESS_PLACEHOLDER = "Address to be confirmed"
DATE_PLACEHOLDER = "Date to be confirmed"
REGION_PLACEHOLDER = "Region not specified"

QR_TYPE = "event_checkin"
ICS_LINE_OCTETS = 75

_WEEKDAY_PREFIX = re.compile(r"^(monday|tuesday|wednesday|thursday|friday|saturday|sunday),?\s+", re.IGNORECASE)

PRINTABLE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>{{ ticket.event_name }} - {{ ticket.member_name }}</title>
  <style>
    body { font-family: sans-serif; max-width: 640px; margin: 2em auto; }
    .ticket { border: 2px solid #333; border-radius: 8px; padding: 1.5em; }
    .qr { text-align: center; }
    dt { font-weight: bold; }
    @media print { .no-print { display: none; } }
  </style>
</head>
<body>
  <div class="ticket">
    <h1>{{ ticket.event_name }}</h1>
    {% if ticket.placeholder %}<p><em>Provisional ticket, details may change.</em></p>{% endif %}
    <dl>
      <dt>Name</dt><dd>{{ ticket.member_name }}</dd>
      <dt>Membership number</dt><dd>{{ ticket.membership_number }}</dd>
      <dt>Region</dt><dd>{{ ticket.region }}</dd>
      <dt>Venue</dt><dd>{{ ticket.venue }}</dd>
      <dt>Address</dt><dd>{{ ticket.venue_address }}</dd>
      <dt>Date</dt><dd>{{ ticket.date }}</dd>
      <dt>Session</dt><dd>{{ ticket.session }} ({{ ticket.time_span }})</dd>
    </dl>
    <div class="qr"><img src="{{ qr_src }}" alt="Check-in QR code" width="240" height="240"></div>
    <p class="no-print"><a href="{{ link }}">{{ link }}</a></p>
  </div>
</body>
</html>
"""


def _ics_escape(text: str) -> str:
    return (text.replace("\\", "\\\\").replace(";", "\\;").replace(",", "\\,")
            .replace("\r\n", "\\n").replace("\n", "\\n"))


def _ics_fold(line: str) -> str:
    """Split a content line into pieces of at most 75 octets joined by CRLF and a space"""
    pieces = []
    current, size, limit = [], 0, ICS_LINE_OCTETS
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            pieces.append("".join(current))
            # the leading space of a continuation line counts towards its length
            current, size, limit = [], 0, ICS_LINE_OCTETS - 1
        current.append(char)
        size += width
    pieces.append("".join(current))
    return "\r\n ".join(pieces)


class TicketBuilder:
    """
    Builds TicketArtifacts and their exports for one BMM round
    """

    def __init__(self, config: VenueConfig = None, portal_url: str = "https://events.etu.nz"):
        """
        Initialize ticket builder

        Args:
            config: Venue configuration, defaults to the shipped asset
            portal_url: Public root of the member portal, used for share links
        """
        self.config = config or default_venue_config()
        self.portal_url = portal_url.rstrip("/")

    def _venue_info(self, member: Member, venue_name: Optional[str]) -> Optional[VenueInfo]:
        info = self.config.venue_for(member.forum)
        if info is not None:
            return info
        if venue_name:
            for candidate in self.config.venues.values():
                if candidate.venue == venue_name:
                    return candidate
        return None

    def qr_payload(self, token: str, membership_number: str, name: str) -> str:
        """
        JSON text embedded in the ticket's QR code

        The check-in pipeline reads ``token`` back out of it.
        """
        return json.dumps({
            "token": token,
            "membershipNumber": membership_number,
            "name": name,
            "type": QR_TYPE,
            "checkinUrl": f"{self.config.checkin_url_base}/{token}",
        })

    def build_ticket(self, member: Member, server_ticket: Optional[Dict] = None) -> TicketArtifact:
        """
        Assemble a member's ticket

        Args:
            member: Member record
            server_ticket: Ticket data fetched from the backend, or None when
                it is not available yet

        Returns:
            TicketArtifact with every display field populated
        """
        server = server_ticket or {}

        venue_name = first_present(server, "assignedVenue", "venue") or member.assigned_venue
        info = self._venue_info(member, venue_name)

        venue = venue_name or (info.venue if info else None) or VENUE_PLACEHOLDER
        address = (first_present(server, "venueAddress", "address") or member.venue_address
                   or (info.address if info else None) or ADDRESS_PLACEHOLDER)
        event_date = (first_present(server, "assignedDate", "date") or member.assigned_date
                      or (info.date if info else None) or DATE_PLACEHOLDER)

        slot = SessionSlot.from_label(first_present(server, "assignedSession", "session", "sessionTime"))
        if slot is None:
            slot = resolve_session(member.forum, member.preferred_times, self.config)

        token = first_present(server, "ticketToken", "token") or member.token
        membership_number = str(first_present(server, "membershipNumber") or member.membership_number)
        name = first_present(server, "memberName", "name") or member.name

        return TicketArtifact(
            member_name=name,
            membership_number=membership_number,
            region=first_present(server, "regionDesc", "region") or member.region or REGION_PLACEHOLDER,
            event_name=first_present(server, "eventName") or self.config.event_name,
            venue=venue,
            venue_address=address,
            date=event_date,
            session=slot.label,
            time_span=time_span_for(slot),
            token=token,
            qr_payload=self.qr_payload(token, membership_number, name),
            forum=first_present(server, "forumDesc", "forum") or member.forum,
            placeholder=not server,
        )

    # Exports

    def ticket_link(self, artifact: TicketArtifact) -> str:
        return f"{self.portal_url}/ticket?token={quote(artifact.token, safe='')}"

    def parse_ticket_date(self, text: str) -> Optional[date]:
        """
        Parse a venue date such as "Monday 1 September 2025"

        Dates without a year take the configured event year.

        Returns:
            The date, or None if the text is not a recognisable date
        """
        if not text:
            return None
        cleaned = _WEEKDAY_PREFIX.sub("", text.strip())
        for fmt in ("%Y-%m-%d", "%d %B %Y", "%d %b %Y", "%B %d, %Y", "%d/%m/%Y"):
            try:
                return datetime.strptime(cleaned, fmt).date()
            except ValueError:
                continue
        for fmt in ("%d %B", "%d %b"):
            try:
                parsed = datetime.strptime(f"{cleaned} {self.config.event_year}", f"{fmt} %Y")
            except ValueError:
                continue
            return parsed.date()
        return None

    def event_window(self, artifact: TicketArtifact):
        """
        Start and end of the ticket's session as naive local datetimes

        Unparseable dates fall back to 10:00-12:00 on the default event date.
        """
        event_date = self.parse_ticket_date(artifact.date)
        slot = SessionSlot.from_label(artifact.session)
        if event_date is None or slot is None:
            logger.info("Using default calendar window for ticket %s (date %r)", artifact.token, artifact.date)
            start = datetime.combine(self.config.default_event_date, time(10, 0))
            return start, start + timedelta(hours=2)

        hour, minute = (int(part) for part in slot.start_24h.split(":"))
        start = datetime.combine(event_date, time(hour, minute)) - timedelta(minutes=30)
        return start, start + timedelta(hours=2)

    def to_ics(self, artifact: TicketArtifact, now: datetime = None) -> str:
        """
        Render the ticket as an iCalendar event

        Args:
            artifact: Ticket to export
            now: Timestamp for DTSTAMP, defaults to the current UTC time

        Returns:
            VCALENDAR text with CRLF line endings, long lines folded
        """
        start, end = self.event_window(artifact)
        stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        tz = self.config.timezone
        description = (f"Membership number: {artifact.membership_number}\n"
                       f"Session: {artifact.session} ({artifact.time_span})\n"
                       f"Ticket: {self.ticket_link(artifact)}")
        lines = [
            "BEGIN:VCALENDAR",
            "VERSION:2.0",
            "PRODID:-//E tu//BMM Portal//EN",
            "CALSCALE:GREGORIAN",
            "METHOD:PUBLISH",
            "BEGIN:VEVENT",
            f"UID:bmm-{artifact.token}@events.etu.nz",
            f"DTSTAMP:{stamp.strftime('%Y%m%dT%H%M%SZ')}",
            f"DTSTART;TZID={tz}:{start.strftime('%Y%m%dT%H%M%S')}",
            f"DTEND;TZID={tz}:{end.strftime('%Y%m%dT%H%M%S')}",
            f"SUMMARY:{_ics_escape(artifact.event_name)}",
            f"LOCATION:{_ics_escape(f'{artifact.venue}, {artifact.venue_address}')}",
            f"DESCRIPTION:{_ics_escape(description)}",
            "END:VEVENT",
            "END:VCALENDAR",
        ]
        return "".join(_ics_fold(line) + "\r\n" for line in lines)

    def qr_png(self, artifact: TicketArtifact) -> bytes:
        """
        Render the ticket's QR payload as a PNG image

        Returns:
            PNG bytes
        """
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(artifact.qr_payload)
        qr.make(fit=True)

        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format='PNG')
        return buffer.getvalue()

    def qr_data_uri(self, artifact: TicketArtifact) -> str:
        img_base64 = base64.b64encode(self.qr_png(artifact)).decode('utf-8')
        return f"data:image/png;base64,{img_base64}"

    def render_printable(self, artifact: TicketArtifact) -> str:
        """Printable HTML page; needs a Flask application context"""
        return render_template_string(
            PRINTABLE_TEMPLATE,
            ticket=artifact,
            qr_src=self.qr_data_uri(artifact),
            link=self.ticket_link(artifact),
        )
