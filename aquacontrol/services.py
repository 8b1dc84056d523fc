"""
Business Logic Services for AquaControl

This module contains the service classes of the key custody ledger:
the member registry, the identity resolver that turns a scanned
payload into a member, the event ledger that records hand-overs and
keeps every observer up to date, and the transient notification glue
shown to the operator.
"""

import dataclasses
import json
import logging
import threading
import time
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, Iterable, List, Optional, Union

from .exceptions import (
    ActorUnavailableException,
    ConfirmationRequiredException,
    DataValidationException,
    EventNotFoundException,
    MemberNotFoundException,
)
from .models import (
    Member,
    MemberCard,
    Unresolved,
    UsageEvent,
    period_for,
    token_image_url,
    token_payload,
)
from .repositories import DataRepository, EventStore, StoredRecord


logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[List[UsageEvent]], None]
ErrorCallback = Callable[[Exception], None]


class MemberRegistry:
    """
    Fixed set of known members

    Built once at startup and passed to every component that needs it.
    Lookups are exact; iteration follows registry order, which is also
    the tie-break order of the usage ranking.
    """

    def __init__(self, members: Iterable[Member]):
        """
        Initialize member registry

        Args:
            members: Members in registry order

        Raises:
            DataValidationException: If ids are empty or repeated
        """
        self._members = tuple(members)
        self._by_id: Dict[str, Member] = {}
        for member in self._members:
            if not member.member_id or not member.member_id.strip():
                raise DataValidationException("member_id", "Empty member ID")
            if not member.display_name:
                raise DataValidationException(
                    "display_name", f"Empty name for member {member.member_id}"
                )
            if member.member_id in self._by_id:
                raise DataValidationException(
                    "member_id", f"Duplicate member ID {member.member_id}"
                )
            self._by_id[member.member_id] = member

    @classmethod
    def from_repository(cls, repository: DataRepository) -> 'MemberRegistry':
        """
        Load members from a repository holding ``{id: {name, color}}``

        Args:
            repository: Repository for member data

        Raises:
            DataValidationException: If member data is invalid
        """
        members = []
        for member_id, data in repository.load_data().items():
            if not isinstance(data, dict) or 'name' not in data:
                raise DataValidationException(
                    f"member_{member_id}", "Invalid member data: missing name"
                )
            members.append(Member.from_dict(dict(data, id=member_id)))
        return cls(members)

    def __iter__(self):
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)

    def __contains__(self, member_id: str) -> bool:
        return member_id in self._by_id

    @property
    def members(self) -> tuple:
        return self._members

    def get(self, member_id: str) -> Optional[Member]:
        return self._by_id.get(member_id)

    def get_or_raise(self, member_id: str) -> Member:
        """
        Get member by ID or raise exception if not found

        Raises:
            MemberNotFoundException: If member not found
        """
        member = self.get(member_id)
        if member is None:
            raise MemberNotFoundException(member_id)
        return member

    def search(self, term: str) -> List[Member]:
        """Members whose name contains ``term``, ignoring case"""
        needle = (term or "").strip().lower()
        return [m for m in self._members if needle in m.display_name.lower()]

    def card(self, member_id: str, size: int = 300) -> MemberCard:
        """
        Data for one printable identity card

        Args:
            member_id: Member ID
            size: Side of the QR image in pixels

        Returns:
            MemberCard with the token payload and the image service URL
        """
        member = self.get_or_raise(member_id)
        return MemberCard(member=member, payload=token_payload(member),
                          image_url=token_image_url(member, size))


class IdentityResolver:
    """
    Turns a scanned payload into a member

    Camera-decoded cards carry a JSON object with an ``id`` field; USB
    scanners emulating a keyboard usually send the bare id. Both are
    accepted. An unknown id is a normal outcome, not an error.
    """

    def __init__(self, registry: MemberRegistry):
        self.registry = registry

    @staticmethod
    def extract_id(raw_payload: str) -> str:
        text = (raw_payload or "").strip()
        try:
            data = json.loads(text)
        except ValueError:
            return text
        if isinstance(data, dict) and isinstance(data.get('id'), str):
            return data['id'].strip()
        return text

    def resolve(self, raw_payload: str) -> Union[Member, Unresolved]:
        candidate = self.extract_id(raw_payload)
        member = self.registry.get(candidate)
        if member is None:
            logger.info("Scanned id %r does not match any member", candidate)
            return Unresolved(candidate)
        return member


class EventLedger:
    """
    Append-only ledger of key hand-overs

    Every observer receives the full ordered snapshot immediately on
    subscription and again after each change made through any ledger
    sharing the same store. Snapshots are ordered most recent first;
    events with the same timestamp are ordered by store insertion,
    newest insertion first.
    """

    def __init__(self, store: EventStore, registry: MemberRegistry,
                 tz: tzinfo = timezone.utc,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize event ledger

        Args:
            store: Backing store for usage events
            registry: Known members
            tz: Local time zone used for period labels
            clock: Source of the server timestamp (UTC aware)
        """
        self.store = store
        self.registry = registry
        self.tz = tz
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def append(self, member_id: str, actor_id: Optional[str]) -> UsageEvent:
        """
        Record that a member took the key

        Args:
            member_id: ID of the member taking the key
            actor_id: ID of the operator holding the scanning device

        Returns:
            The stored UsageEvent

        Raises:
            ActorUnavailableException: If there is no operator yet
            MemberNotFoundException: If the member is unknown
            DataAccessException: If the store rejects the write
        """
        if not actor_id:
            raise ActorUnavailableException()
        member = self.registry.get_or_raise(member_id)

        occurred_at = self.clock()
        label, year = period_for(occurred_at, self.tz)
        event = UsageEvent(
            event_id="",
            member_id=member.member_id,
            member_name_snapshot=member.display_name,
            recorded_by_actor_id=actor_id,
            occurred_at=occurred_at,
            period_label=label,
            period_year=year,
        )
        event_id = self.store.create(event.to_record())
        logger.info("Key handed to %s (%s), recorded by %s as %s",
                    member.display_name, member.member_id, actor_id, event_id)
        return dataclasses.replace(event, event_id=event_id)

    def remove(self, event_id: str, confirmed: bool = False) -> None:
        """
        Permanently delete a usage event

        Args:
            event_id: ID of the event
            confirmed: Must be True; deletion cannot be undone

        Raises:
            ConfirmationRequiredException: If not confirmed
            EventNotFoundException: If the event does not exist
            DataAccessException: If the store rejects the delete
        """
        if not confirmed:
            raise ConfirmationRequiredException("remove")
        if not self.store.delete(event_id):
            raise EventNotFoundException(event_id)
        logger.info("Usage event %s removed", event_id)

    def snapshot(self) -> List[UsageEvent]:
        return self._order(self.store.list_records())

    def latest(self) -> Optional[UsageEvent]:
        """Most recent hand-over: who has the key now"""
        events = self.snapshot()
        return events[0] if events else None

    def subscribe(self, on_snapshot: SnapshotCallback,
                  on_error: Optional[ErrorCallback] = None) -> Callable[[], None]:
        """
        Observe the ledger

        Args:
            on_snapshot: Called with the ordered event list now and on every change
            on_error: Called at most once if the feed breaks; delivery stops

        Returns:
            Function that stops delivery
        """
        def on_change(records: List[StoredRecord]) -> None:
            on_snapshot(self._order(records))

        return self.store.subscribe(on_change, on_error)

    @staticmethod
    def _order(records: List[StoredRecord]) -> List[UsageEvent]:
        ordered = sorted(
            records,
            key=lambda r: (datetime.fromisoformat(r.data['occurred_at']), r.sequence),
            reverse=True,
        )
        return [UsageEvent.from_record(r.event_id, r.data) for r in ordered]


class Notifier:
    """
    Transient status message for the operator

    Only the latest message is kept; it disappears on its own after
    ``ttl`` seconds.
    """

    def __init__(self, ttl: float = 3.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._message: Optional[str] = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def show(self, message: str) -> None:
        with self._lock:
            self._message = message
            self._expires_at = self.clock() + self.ttl

    def current(self) -> Optional[str]:
        with self._lock:
            if self._message is not None and self.clock() >= self._expires_at:
                self._message = None
            return self._message
