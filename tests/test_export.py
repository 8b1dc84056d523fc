"""Tests for the delimited text export."""

import csv
import io
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from aquacontrol.exceptions import ExportException
from aquacontrol.export import HEADERS, export_filename, to_delimited_text
from aquacontrol.models import UsageEvent


def _event(n, name="Japa", member_id="vecino_03"):
    return UsageEvent(
        event_id=f"e{n}",
        member_id=member_id,
        member_name_snapshot=name,
        recorded_by_actor_id="op",
        occurred_at=datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc) + timedelta(hours=n),
        period_label="marzo",
        period_year=2025,
    )


def test_export_parses_back_to_source_fields():
    events = [_event(0), _event(1, "Suegra de Dina", "vecino_02"), _event(2, "Koki", "vecino_06")]
    text = to_delimited_text(events)
    rows = list(csv.reader(io.StringIO(text)))

    assert tuple(rows[0]) == HEADERS
    assert len(rows) == len(events) + 1
    for row, event in zip(rows[1:], events):
        assert row[2] == event.member_name_snapshot
        assert row[3] == event.member_id
        assert row[4] == event.period_label
        assert row[5] == str(event.period_year)


def test_date_and_time_follow_local_time_zone():
    text = to_delimited_text([_event(0)], ZoneInfo("America/Lima"))
    line = text.splitlines()[1]
    assert line.startswith("10/03/2025,10:00:00,")


def test_empty_history_is_header_only():
    assert to_delimited_text([]) == "Fecha,Hora,Vecino,ID Vecino,Mes,Año\n"


def test_name_with_delimiter_is_rejected():
    with pytest.raises(ExportException) as excinfo:
        to_delimited_text([_event(0, name="Perez, Juan")])
    assert excinfo.value.field_name == "member_name"


def test_filename_uses_date():
    assert export_filename(date(2025, 3, 10)) == "registro_agua_2025-03-10.csv"
