"""
BMM Portal Package

Member self-service and check-in logic for the union's Biennial Membership
Meeting (BMM), served as a Flask application in front of the event backend.

Main Components:
- venues: Venue configuration and session resolution
- scanner: Camera, image upload and hardware barcode scan sources
- suppression: Short-lived duplicate scan suppression
- checkin: Check-in pipeline and scanning desk sessions
- flow: Member preference / attendance state machine
- tickets: Ticket artifacts and their exports
- services, repositories, backend: Service layer, storage and REST client
- app: Main Flask application class

Usage:
    from bmm_portal import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

# Import main components for easy access
from .app import BMMPortalApp, create_app, create_development_app, create_production_app
from .checkin import CheckinPipeline, CheckinStation, extract_token
from .flow import FlowState, MemberFlow
from .models import CheckinResult, CheckinStatus, Member, SessionSlot, TicketArtifact
from .repositories import RepositoryFactory
from .suppression import ScanSuppressor
from .tickets import TicketBuilder
from .venues import VenueConfig, load_venue_config, resolve_session, time_span_for
from .exceptions import (
    BMMPortalException,
    BackendException,
    DataValidationException,
    DataAccessException,
    MemberNotFoundException,
    NoEventSelectedException,
)

__all__ = [
    # App factory functions
    'BMMPortalApp',
    'create_app',
    'create_development_app',
    'create_production_app',

    # Core logic
    'resolve_session',
    'time_span_for',
    'load_venue_config',
    'VenueConfig',
    'ScanSuppressor',
    'CheckinPipeline',
    'CheckinStation',
    'extract_token',
    'MemberFlow',
    'FlowState',
    'TicketBuilder',

    # Data models
    'Member',
    'SessionSlot',
    'CheckinResult',
    'CheckinStatus',
    'TicketArtifact',

    # Repository factory
    'RepositoryFactory',

    # Exceptions
    'BMMPortalException',
    'BackendException',
    'DataValidationException',
    'DataAccessException',
    'MemberNotFoundException',
    'NoEventSelectedException',
]
