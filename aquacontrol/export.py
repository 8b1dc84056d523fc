"""
Delimited text export of the usage history.

Fields are written unquoted. Member names come from a controlled
registry, so a name containing a comma or a line break is rejected
with ``ExportException`` instead of being escaped.
"""

import csv
import io
from datetime import date, timezone, tzinfo
from typing import Iterable, Optional

from .exceptions import ExportException
from .models import UsageEvent


HEADERS = ("Fecha", "Hora", "Vecino", "ID Vecino", "Mes", "Año")
DELIMITER = ","
DATE_FORMAT = "%d/%m/%Y"
TIME_FORMAT = "%H:%M:%S"


def _row(event: UsageEvent, tz: tzinfo):
    local = event.occurred_at.astimezone(tz)
    row = (
        ("date", local.strftime(DATE_FORMAT)),
        ("time", local.strftime(TIME_FORMAT)),
        ("member_name", event.member_name_snapshot),
        ("member_id", event.member_id),
        ("period_label", event.period_label),
        ("period_year", str(event.period_year)),
    )
    for name, value in row:
        if DELIMITER in value or "\n" in value or "\r" in value:
            raise ExportException(name, value)
    return [value for _, value in row]


def to_delimited_text(events: Iterable[UsageEvent], tz: Optional[tzinfo] = None) -> str:
    """
    Serialize usage events as comma separated text

    Date and time are derived from each event's timestamp in ``tz`` at
    formatting time.

    Args:
        events: Usage events, written in the given order
        tz: Local time zone (UTC when omitted)

    Returns:
        Header line plus one line per event, newline separated

    Raises:
        ExportException: If a field contains the delimiter or a line break
    """
    tz = tz or timezone.utc
    buffer = io.StringIO()
    writer = csv.writer(buffer, delimiter=DELIMITER, quoting=csv.QUOTE_NONE,
                        quotechar=None, lineterminator="\n")
    writer.writerow(HEADERS)
    for event in events:
        writer.writerow(_row(event, tz))
    return buffer.getvalue()


def export_filename(today: date) -> str:
    return f"registro_agua_{today.isoformat()}.csv"
