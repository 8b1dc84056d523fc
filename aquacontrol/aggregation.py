"""
Usage statistics derived from a ledger snapshot.

``aggregate`` is a pure function: it is re-run on every snapshot the
ledger pushes and never mutates what it is given.
"""

from collections import Counter
from typing import Iterable, Optional, Sequence

from .models import (
    AggregateSnapshot,
    Member,
    MemberCount,
    UNKNOWN_PERIOD,
    UsageEvent,
    ordered_periods,
)


def aggregate(events: Iterable[UsageEvent], members: Iterable[Member]) -> AggregateSnapshot:
    """
    Per-member and per-month usage counts

    Every member starts at zero so unused members still show up. Events
    are matched by member id, then by the recorded name for events of
    members no longer in the registry. The ranking is sorted by count
    with ties kept in registry order; months are in calendar order, so
    the result does not depend on the order of ``events``.

    Args:
        events: Usage events, in any order
        members: Registry members, in registry order

    Returns:
        AggregateSnapshot
    """
    events = list(events)
    members = list(members)
    by_name = {}
    for member in members:
        by_name.setdefault(member.display_name, member.member_id)
    known_ids = {member.member_id for member in members}

    member_counts = Counter()
    period_counts = Counter()
    for event in events:
        if event.member_id in known_ids:
            member_counts[event.member_id] += 1
        elif event.member_name_snapshot in by_name:
            member_counts[by_name[event.member_name_snapshot]] += 1
        period_counts[event.period_label or UNKNOWN_PERIOD] += 1

    ranking = sorted(
        (
            MemberCount(m.member_id, m.display_name, m.color_tag, member_counts[m.member_id])
            for m in members
        ),
        key=lambda entry: entry.count,
        reverse=True,
    )
    return AggregateSnapshot(
        ranking=tuple(ranking),
        periods=tuple(ordered_periods(period_counts)),
        total=len(events),
        last_event=_most_recent(events),
    )


def _most_recent(events: Sequence[UsageEvent]) -> Optional[UsageEvent]:
    if not events:
        return None
    return max(events, key=lambda event: event.occurred_at)
