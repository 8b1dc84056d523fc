"""
Data Models for AquaControl

This module contains the data model classes for the key custody ledger:
members of the community, the immutable usage events recorded when a
member takes the key, the scan session vocabulary and the derived
aggregate snapshot. Models are frozen dataclasses; nothing here talks
to storage or hardware.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, tzinfo
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode
import json


MONTH_NAMES = (
    "enero", "febrero", "marzo", "abril", "mayo", "junio",
    "julio", "agosto", "septiembre", "octubre", "noviembre", "diciembre",
)

UNKNOWN_PERIOD = "desconocido"

TOKEN_IMAGE_SERVICE = "https://api.qrserver.com/v1/create-qr-code/"
TOKEN_IMAGE_COLOR = "334155"


class FacingMode(Enum):
    """Which camera a scan session asks the platform for"""
    ENVIRONMENT = "environment"
    USER = "user"


class ScanStatus(Enum):
    """Lifecycle states of a scan session"""
    IDLE = "Idle"
    STARTING = "Starting"
    ACTIVE = "Active"
    STOPPED = "Stopped"
    ERROR = "Error"


@dataclass(frozen=True)
class Member:
    """
    Data model for a community member

    Members are loaded once at startup and never change at runtime.
    """
    member_id: str
    display_name: str
    color_tag: str

    @classmethod
    def from_dict(cls, data: Dict) -> 'Member':
        """
        Create Member instance from dictionary data

        Accepts both the members file keys and the short keys of the
        original member list (``id``, ``name``, ``color``).

        Args:
            data: Dictionary containing member information

        Returns:
            Member instance
        """
        return cls(
            member_id=str(data.get('member_id', data.get('id'))),
            display_name=data.get('display_name', data.get('name')),
            color_tag=data.get('color_tag', data.get('color', '#64748B')),
        )

    def to_dict(self) -> Dict:
        """Convert member to dictionary for JSON serialization"""
        return asdict(self)


DEFAULT_MEMBERS = (
    Member("vecino_01", "Dina", "#3B82F6"),
    Member("vecino_02", "Suegra de Dina", "#10B981"),
    Member("vecino_03", "Japa", "#F59E0B"),
    Member("vecino_04", "Russel", "#EF4444"),
    Member("vecino_05", "Leoncio", "#8B5CF6"),
    Member("vecino_06", "Koki", "#EC4899"),
    Member("vecino_07", "Jose", "#6366F1"),
    Member("vecino_08", "Imperio", "#14B8A6"),
    Member("vecino_09", "Inocente", "#F97316"),
)


@dataclass(frozen=True)
class Unresolved:
    """A scanned identifier that matched no member"""
    raw_id: str


def period_for(moment: datetime, tz: tzinfo) -> Tuple[str, int]:
    """
    Derive the period label and year of a moment in the local time zone

    Args:
        moment: Timezone-aware datetime
        tz: Local time zone the community lives in

    Returns:
        (lower-case Spanish month name, calendar year)
    """
    local = moment.astimezone(tz)
    return MONTH_NAMES[local.month - 1], local.year


@dataclass(frozen=True)
class UsageEvent:
    """
    Data model for a key hand-over

    Represents one immutable record that a member took the key. The
    member name is copied at record time so history still reads
    correctly if the registry changes later.
    """
    event_id: str
    member_id: str
    member_name_snapshot: str
    recorded_by_actor_id: str
    occurred_at: datetime
    period_label: str
    period_year: int

    @classmethod
    def from_record(cls, event_id: str, data: Dict) -> 'UsageEvent':
        """
        Create UsageEvent instance from a stored record

        Args:
            event_id: Identifier assigned by the backing store
            data: Stored record as produced by ``to_record``

        Returns:
            UsageEvent instance
        """
        return cls(
            event_id=event_id,
            member_id=data['member_id'],
            member_name_snapshot=data['member_name'],
            recorded_by_actor_id=data['recorded_by'],
            occurred_at=datetime.fromisoformat(data['occurred_at']),
            period_label=data.get('period_label') or UNKNOWN_PERIOD,
            period_year=int(data.get('period_year') or 0),
        )

    def to_record(self) -> Dict:
        """Stored representation, without the store-assigned id"""
        return {
            'member_id': self.member_id,
            'member_name': self.member_name_snapshot,
            'recorded_by': self.recorded_by_actor_id,
            'occurred_at': self.occurred_at.isoformat(),
            'period_label': self.period_label,
            'period_year': self.period_year,
        }

    def to_dict(self) -> Dict:
        """Convert usage event to dictionary for JSON responses"""
        data = self.to_record()
        data['event_id'] = self.event_id
        return data


@dataclass(frozen=True)
class MemberCount:
    """Usage count of one member"""
    member_id: str
    display_name: str
    color_tag: str
    count: int


@dataclass(frozen=True)
class PeriodCount:
    """Usage count of one month label, summed over years"""
    label: str
    count: int


@dataclass(frozen=True)
class AggregateSnapshot:
    """
    Summaries derived from one ledger snapshot

    Never persisted; recomputed from scratch on every snapshot.
    """
    ranking: Tuple[MemberCount, ...]
    periods: Tuple[PeriodCount, ...]
    total: int
    last_event: Optional[UsageEvent] = None

    @property
    def top_member(self) -> Optional[MemberCount]:
        """Most frequent member, or None while nothing was recorded"""
        if self.total == 0 or not self.ranking:
            return None
        return self.ranking[0]

    def counts_by_member(self) -> Dict[str, int]:
        return {entry.member_id: entry.count for entry in self.ranking}

    def to_dict(self) -> Dict:
        """Convert snapshot to dictionary for JSON responses"""
        top = self.top_member
        return {
            'total': self.total,
            'ranking': [asdict(entry) for entry in self.ranking],
            'periods': [asdict(entry) for entry in self.periods],
            'top_member': asdict(top) if top else None,
            'last_event': self.last_event.to_dict() if self.last_event else None,
        }


def token_payload(member: Member) -> str:
    """Compact JSON encoded on a member's printed card"""
    return json.dumps(
        {'id': member.member_id, 'name': member.display_name},
        ensure_ascii=False,
        separators=(',', ':'),
    )


def token_image_url(member: Member, size: int = 300) -> str:
    """URL of the QR image encoding a member's card payload"""
    query = urlencode({
        'size': f"{size}x{size}",
        'data': token_payload(member),
        'color': TOKEN_IMAGE_COLOR,
    })
    return f"{TOKEN_IMAGE_SERVICE}?{query}"


@dataclass(frozen=True)
class MemberCard:
    """
    Data needed by the printable card surface

    The QR image itself is produced by the external image service.
    """
    member: Member
    payload: str
    image_url: str

    def to_dict(self) -> Dict:
        data = self.member.to_dict()
        data['payload'] = self.payload
        data['image_url'] = self.image_url
        return data


def ordered_periods(counts: Dict[str, int]) -> List[PeriodCount]:
    """Period counts in calendar order; unknown labels go last"""
    def sort_key(item):
        label, _ = item
        if label in MONTH_NAMES:
            return (0, MONTH_NAMES.index(label), label)
        return (1, 0, label)

    return [
        PeriodCount(label=label, count=count)
        for label, count in sorted(counts.items(), key=sort_key)
    ]
