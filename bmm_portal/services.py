"""
Business Logic Services for the BMM Portal

This module contains service classes that sit between the web layer and the
event backend: loading members, preparing tickets after generation, and
persisting member flow records between requests.
"""

import logging
from typing import Optional, Tuple

from .backend import BackendClient
from .exceptions import BackendException, DataValidationException
from .models import Member, Notice, NoticeLevel, TicketArtifact
from .repositories import DataRepository
from .retry import RetryExhausted, RetryPolicy, fixed_backoff
from .tickets import TicketBuilder

logger = logging.getLogger(__name__)


class TicketService:
    """
    Generates, fetches and, when needed, fabricates member tickets

    The backend writes a ticket asynchronously after generation, so the
    fetch runs under a bounded retry policy. When every attempt fails a
    client-built ticket is returned instead; callers never wait longer
    than the policy allows.
    """

    def __init__(self, backend: BackendClient, builder: TicketBuilder, retry_policy: RetryPolicy = None):
        """
        Initialize ticket service

        Args:
            backend: Event backend client
            builder: Ticket artifact builder
            retry_policy: Policy for fetching a fresh ticket, defaults to
                3 attempts 1s apart after a 2s settle delay
        """
        self.backend = backend
        self.builder = builder
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=3,
            backoff=fixed_backoff(1.0),
            initial_delay=2.0,
            retry_on=(BackendException,),
        )

    def generate(self, member: Member) -> bool:
        """
        Ask the backend to generate a ticket

        Returns:
            True if the ticket exists now (including "already exists"),
            False if generation failed or the member has no backend id
        """
        if member.member_id is None:
            logger.warning("Member %s has no backend id, skipping ticket generation", member.membership_number)
            return False
        try:
            return self.backend.generate_ticket(member.member_id)
        except BackendException as e:
            logger.warning("Ticket generation failed for member %s: %s", member.membership_number, e)
            return False

    def _fetch_once(self, token: str) -> dict:
        data = self.backend.fetch_ticket(token)
        if not data:
            raise BackendException("Ticket not available yet", status_code=200)
        return data

    def fetch(self, member: Member) -> Optional[dict]:
        """
        Fetch the stored ticket under the retry policy

        Returns:
            Ticket data, or None when every attempt failed
        """
        try:
            return self.retry_policy.run(lambda: self._fetch_once(member.token), "Ticket fetch")
        except RetryExhausted as e:
            logger.warning("Falling back to a provisional ticket for member %s: %s", member.membership_number, e)
            return None

    def prepare_ticket(self, member: Member) -> Tuple[TicketArtifact, Notice]:
        """
        Generate, fetch and build a member's ticket

        Returns:
            The ticket and a notice describing how it was obtained
        """
        if not self.generate(member):
            ticket = self.builder.build_ticket(member)
            return ticket, Notice(NoticeLevel.WARNING,
                                  "Your preferences were saved, but your ticket could not be generated yet. "
                                  "A provisional ticket is shown below.")

        server_ticket = self.fetch(member)
        ticket = self.builder.build_ticket(member, server_ticket)
        if server_ticket is None:
            return ticket, Notice(NoticeLevel.INFO, "Your ticket is being prepared. A provisional ticket is shown below.")
        return ticket, Notice(NoticeLevel.SUCCESS, "Your ticket is ready.")


class MemberService:
    """
    Loads members and stores their flow records
    """

    def __init__(self, backend: BackendClient, flow_repository: DataRepository):
        self.backend = backend
        self.flow_repository = flow_repository

    def get_member(self, token: str) -> Member:
        """
        Load a member from the backend

        Args:
            token: Member access token from the portal link

        Returns:
            Member instance

        Raises:
            DataValidationException: If the token is blank
            MemberNotFoundException: If the backend has no such member
        """
        token = (token or "").strip()
        if not token:
            raise DataValidationException("token", "Member token is required")
        return Member.from_dict(self.backend.get_member(token), token=token)

    def load_flow_record(self, token: str) -> Optional[dict]:
        return self.flow_repository.get(token)

    def save_flow_record(self, token: str, record: dict) -> None:
        self.flow_repository.put(token, record)
        logger.debug("Saved flow record for %s in state %s", token, record.get("state"))

    def forget(self, token: str) -> bool:
        return self.flow_repository.delete(token)
