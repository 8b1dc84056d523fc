"""
AquaControl Package

A key custody ledger for a small community sharing the key of a water
valve. Each hand-over is recorded by scanning the member's printed QR
card (camera or USB scanner), stored in a live-updating ledger, and
summarised into per-member and per-month statistics.

Main Components:
- models: Members, usage events, scan session vocabulary, aggregates
- repositories: Members file access and the ledger's backing stores
- services: Member registry, identity resolver, event ledger, notifications
- scanner: Camera scan sessions with rear-to-front camera fallback
- aggregation: Usage statistics from a ledger snapshot
- export: Delimited text export of the history
- exceptions: Custom exception classes for error handling
- app: Main Flask application class

Usage:
    from aquacontrol import create_app

    app = create_app()
    app.run()
"""

__version__ = "1.0.0"

from .app import create_app, create_development_app, create_production_app
from .aggregation import aggregate
from .export import export_filename, to_delimited_text
from .models import (
    AggregateSnapshot,
    DEFAULT_MEMBERS,
    FacingMode,
    Member,
    ScanStatus,
    Unresolved,
    UsageEvent,
)
from .repositories import (
    EventStore,
    InMemoryEventStore,
    JSONEventStore,
    RedisEventStore,
    RepositoryFactory,
)
from .scanner import CameraBackend, OpenCVCamera, ScanSession, ScanSessionManager
from .services import EventLedger, IdentityResolver, MemberRegistry, Notifier
from .exceptions import (
    AquaControlException,
    CameraAcquisitionException,
    DataAccessException,
    DataValidationException,
    EventNotFoundException,
    MemberNotFoundException,
    SubscriptionException,
)

__all__ = [
    # App factory functions
    'create_app',
    'create_development_app',
    'create_production_app',

    # Data models
    'AggregateSnapshot',
    'DEFAULT_MEMBERS',
    'FacingMode',
    'Member',
    'ScanStatus',
    'Unresolved',
    'UsageEvent',

    # Core services
    'EventLedger',
    'IdentityResolver',
    'MemberRegistry',
    'Notifier',
    'aggregate',
    'to_delimited_text',
    'export_filename',

    # Scanning
    'CameraBackend',
    'OpenCVCamera',
    'ScanSession',
    'ScanSessionManager',

    # Storage
    'EventStore',
    'InMemoryEventStore',
    'JSONEventStore',
    'RedisEventStore',
    'RepositoryFactory',

    # Exceptions
    'AquaControlException',
    'CameraAcquisitionException',
    'DataAccessException',
    'DataValidationException',
    'EventNotFoundException',
    'MemberNotFoundException',
    'SubscriptionException',
]
