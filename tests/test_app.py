"""Tests for the Flask web surface."""

import csv
import io
import json

import pytest

from aquacontrol.app import create_app
from aquacontrol.exceptions import DataAccessException
from aquacontrol.models import FacingMode
from aquacontrol.repositories import InMemoryEventStore

from conftest import FakeCamera, FakeClock


TEST_CONFIG = {
    'TESTING': True,
    'DEBUG': False,
    'SECRET_KEY': 'test',
    'TIMEZONE': 'America/Lima',
    'LOG_LEVEL': 'WARNING',
}


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def aquacontrol(camera):
    return create_app(TEST_CONFIG, store=InMemoryEventStore(), camera=camera, clock=FakeClock())


@pytest.fixture
def client(aquacontrol):
    return aquacontrol.app.test_client()


def test_dashboard_starts_empty(client):
    response = client.get("/")
    data = response.get_json()

    assert response.status_code == 200
    assert data['total'] == 0
    assert len(data['ranking']) == 9
    assert all(entry['count'] == 0 for entry in data['ranking'])
    assert data['current_period'] == {'label': 'marzo', 'year': 2025}
    assert data['actor_id'].startswith("anon-")


def test_usb_scan_records_hand_over(client):
    response = client.post("/scan", data={'payload': 'vecino_03'})
    event = response.get_json()

    assert response.status_code == 201
    assert event['member_name'] == "Japa"
    assert client.get("/notifications").get_json()['notification'] == "✅ Key handed to Japa"
    assert client.get("/").get_json()['top_member']['display_name'] == "Japa"


def test_usb_scan_of_unknown_card(client):
    response = client.post("/scan", json={'payload': '{"id":"vecino_99"}'})
    assert response.status_code == 404
    assert response.get_json() == {'resolved': False, 'raw_id': 'vecino_99'}
    assert client.get("/events").get_json()['events'] == []


def test_manual_handover_and_unknown_member(client):
    assert client.post("/members/vecino_01/handover").status_code == 201
    response = client.post("/members/nobody/handover")
    assert response.status_code == 404
    assert response.get_json()['error'] == "MEMBER_NOT_FOUND"


def test_members_search_and_card(client):
    names = [m['display_name'] for m in client.get("/members?q=dina").get_json()['members']]
    assert names == ["Dina", "Suegra de Dina"]

    card = client.get("/members/vecino_03/card").get_json()
    assert json.loads(card['payload']) == {'id': 'vecino_03', 'name': 'Japa'}


def test_delete_requires_confirmation(client):
    event_id = client.post("/scan", data={'payload': 'vecino_02'}).get_json()['event_id']

    response = client.post(f"/events/{event_id}/delete")
    assert response.status_code == 400
    assert len(client.get("/events").get_json()['events']) == 1

    response = client.post(f"/events/{event_id}/delete", data={'confirm': 'yes'})
    assert response.status_code == 200
    assert client.get("/events").get_json()['events'] == []

    response = client.post(f"/events/{event_id}/delete", data={'confirm': 'yes'})
    assert response.status_code == 404


def test_history_is_most_recent_first(client):
    for member_id in ("vecino_01", "vecino_02", "vecino_03"):
        client.post("/scan", data={'payload': member_id})
    events = client.get("/events").get_json()['events']
    assert [e['member_id'] for e in events] == ["vecino_03", "vecino_02", "vecino_01"]


def test_export_csv(client):
    client.post("/scan", data={'payload': 'vecino_04'})
    client.post("/scan", data={'payload': 'vecino_05'})

    response = client.get("/export.csv")
    rows = list(csv.reader(io.StringIO(response.get_data(as_text=True))))

    assert response.mimetype == "text/csv"
    assert "registro_agua_2025-03-10.csv" in response.headers['Content-Disposition']
    assert rows[0] == ["Fecha", "Hora", "Vecino", "ID Vecino", "Mes", "Año"]
    assert [row[3] for row in rows[1:]] == ["vecino_05", "vecino_04"]


def test_ledger_disabled_without_actor(camera):
    config = dict(TEST_CONFIG, ANONYMOUS_ACTORS=False)
    client = create_app(config, store=InMemoryEventStore(), camera=camera).app.test_client()

    response = client.post("/scan", data={'payload': 'vecino_03'})
    assert response.status_code == 403

    client.post("/session", data={'actor_id': 'dina-phone'})
    event = client.post("/scan", data={'payload': 'vecino_03'}).get_json()
    assert event['recorded_by'] == "dina-phone"

    client.post("/logout")
    assert client.post("/scan", data={'payload': 'vecino_03'}).status_code == 403


def test_camera_session_records_and_closes(client, camera):
    response = client.post("/scan/session")
    assert response.status_code == 201
    assert response.get_json()['status'] == "Active"

    assert client.post("/scan/session").status_code == 409

    camera.show('{"id":"vecino_06","name":"Koki"}')

    assert client.get("/scan/session").get_json()['status'] == "Stopped"
    assert camera.active is False
    assert [e['member_id'] for e in client.get("/events").get_json()['events']] == ["vecino_06"]


def test_camera_session_uses_front_camera_when_rear_fails(client, camera):
    camera.failing = {FacingMode.ENVIRONMENT}
    data = client.post("/scan/session").get_json()
    assert data == {'status': 'Active', 'camera_facing_mode': 'user', 'last_error': None}


def test_camera_session_error_is_reported(client, camera):
    camera.failing = {FacingMode.ENVIRONMENT, FacingMode.USER}
    response = client.post("/scan/session")

    assert response.status_code == 503
    assert response.get_json()['status'] == "Error"
    assert client.get("/notifications").get_json()['notification'] == response.get_json()['last_error']
    assert client.get("/events").get_json()['events'] == []


def test_camera_session_cancel(client, camera):
    client.post("/scan/session")
    data = client.delete("/scan/session").get_json()
    assert data['status'] == "Stopped"
    assert camera.active is False


def test_event_stream_pushes_snapshot_and_unsubscribes(aquacontrol, client):
    client.post("/scan", data={'payload': 'vecino_07'})

    response = client.get("/events/stream")
    first = next(iter(response.response))
    if isinstance(first, bytes):
        first = first.decode("utf-8")

    assert first.startswith("event: snapshot\n")
    payload = json.loads(first.split("data: ", 1)[1])
    assert payload[0]['member_id'] == "vecino_07"

    response.close()
    assert aquacontrol.store._subscriptions == []


def test_event_stream_closed_before_first_chunk_unsubscribes(aquacontrol, client):
    client.get("/events/stream").close()
    client.head("/events/stream").close()

    client.post("/scan", data={'payload': 'vecino_08'})
    assert aquacontrol.store._subscriptions == []


def test_test_settings_reach_flask_config(aquacontrol):
    assert aquacontrol.app.config['TESTING'] is True
    assert aquacontrol.app.config['SECRET_KEY'] == "test"


def test_members_from_config(camera):
    config = dict(TEST_CONFIG, MEMBERS={
        "casa_1": {"name": "Rosa", "color": "#3B82F6"},
        "casa_2": {"name": "Tito"},
    })
    client = create_app(config, store=InMemoryEventStore(), camera=camera).app.test_client()

    names = [m['display_name'] for m in client.get("/members").get_json()['members']]
    assert names == ["Rosa", "Tito"]
    assert client.post("/scan", data={'payload': 'casa_2'}).status_code == 201


def test_missing_members_file_fails_at_startup(tmp_path, camera):
    config = dict(TEST_CONFIG, MEMBERS_FILE=str(tmp_path / "vecinos.json"))
    with pytest.raises(DataAccessException):
        create_app(config, store=InMemoryEventStore(), camera=camera)


def test_members_file(tmp_path, camera):
    path = tmp_path / "vecinos.json"
    path.write_text(json.dumps({"casa_9": {"name": "Nilda"}}), encoding="utf-8")
    config = dict(TEST_CONFIG, MEMBERS_FILE=str(path))
    aquacontrol = create_app(config, store=InMemoryEventStore(), camera=camera)
    assert [m.member_id for m in aquacontrol.registry] == ["casa_9"]


def test_json_body_must_be_an_object(client):
    response = client.post("/scan", json=["vecino_01"])
    assert response.status_code == 400
    assert response.get_json()['error'] == "VALIDATION_ERROR"
    assert client.post("/session", json="dina-phone").status_code == 400
    assert client.get("/events").get_json()['events'] == []


def test_handover_without_actor_does_not_reveal_members(camera):
    config = dict(TEST_CONFIG, ANONYMOUS_ACTORS=False)
    client = create_app(config, store=InMemoryEventStore(), camera=camera).app.test_client()

    assert client.post("/members/vecino_01/handover").status_code == 403
    assert client.post("/members/nobody/handover").status_code == 403


def test_camera_release_registered_only_when_serving(monkeypatch, camera):
    registered = []
    monkeypatch.setattr("aquacontrol.app.atexit.register", registered.append)

    aquacontrol = create_app(TEST_CONFIG, store=InMemoryEventStore(), camera=camera)
    assert registered == []

    monkeypatch.setattr(aquacontrol.app, "run", lambda **kwargs: None)
    aquacontrol.run()
    assert registered == [aquacontrol.scan_manager.close]
