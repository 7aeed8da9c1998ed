"""
Unit tests for API endpoints.

Tests endpoint behavior using FastAPI TestClient against a throwaway SQLite
database.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from conftest import ORG_ID, utc

import unified_calendar.api.dependencies as deps
from unified_calendar.api.main import app
from unified_calendar.config import get_settings
from unified_calendar.models import SourceEventRecord

HEADERS = {"X-Organization-ID": ORG_ID}
JANUARY = {"view": "month", "date": "2024-01-15"}


@pytest.fixture
def client(sqlite_engine, settings):
    """Test client whose components run on the test database."""

    def init_test_components(engine=None, settings=None):
        return deps.init_components(sqlite_engine, test_settings)

    test_settings = settings
    app.dependency_overrides[get_settings] = lambda: test_settings
    with patch("unified_calendar.api.main.init_db"), \
            patch("unified_calendar.api.main.init_components", side_effect=init_test_components):
        with TestClient(app) as client:
            yield client
    app.dependency_overrides.clear()


def create_event(client, **overrides):
    payload = {
        "title": "Stand-up",
        "start_at": "2024-01-09T09:15:00Z",
        "end_at": "2024-01-09T09:45:00Z",
    }
    payload.update(overrides)
    response = client.post("/calendar/events", json=payload, headers=HEADERS)
    assert response.status_code == 201, response.text
    return response.json()


def list_events(client, headers=HEADERS, **params):
    response = client.get("/calendar/events", params={**JANUARY, **params}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


class TestHealthEndpoint:
    """Test /health endpoint."""

    def test_health_check(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"
        assert data["database_connected"] is True
        assert "manual" in data["sources"]
        assert len(data["sources"]) == 9

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc123"})

        assert response.headers["X-Request-ID"] == "abc123"
        assert "X-Response-Time" in response.headers

    def test_request_id_generated(self, client):
        response = client.get("/health")

        assert len(response.headers["X-Request-ID"]) == 8


class TestRangeEndpoint:
    def test_month_range(self, client):
        response = client.get("/calendar/range", params={"view": "month", "date": "2024-02-14"})

        assert response.status_code == 200
        data = response.json()
        assert data["start"].startswith("2024-01-29T00:00:00")
        assert data["end"].startswith("2024-03-04T00:00:00")
        assert data["previous"] == "2024-01-14"
        assert data["next"] == "2024-03-14"

    def test_unknown_view(self, client):
        response = client.get("/calendar/range", params={"view": "year", "date": "2024-02-14"})

        assert response.status_code == 422
        assert response.json()["error_type"] == "validation_error"


class TestListEventsEndpoint:
    """Test GET /calendar/events."""

    def test_requires_organization(self, client):
        response = client.get("/calendar/events", params=JANUARY)

        assert response.status_code == 422

    def test_blank_organization(self, client):
        response = client.get("/calendar/events", params=JANUARY, headers={"X-Organization-ID": "  "})

        assert response.status_code == 422

    def test_recurring_event_expanded(self, client):
        create_event(client, title="Weekly", start_at="2024-01-01T09:00:00Z",
                     end_at="2024-01-01T10:00:00Z", recurrence_rule="FREQ=WEEKLY;COUNT=3")

        data = list_events(client)

        assert data["total"] == 3
        assert [e["start_at"][:10] for e in data["events"]] == ["2024-01-01", "2024-01-08", "2024-01-15"]
        assert [e["is_recurrence_instance"] for e in data["events"]] == [False, True, True]
        assert all(e["editable"] for e in data["events"])

    def test_projected_sources_included(self, client, session_factory):
        with session_factory() as session:
            session.add(SourceEventRecord(
                organization_id=ORG_ID,
                source_type="shift",
                source_id="s-1",
                title="Morning shift",
                start_at=utc(2024, 1, 3, 6),
                attributes={"employee_id": "emp-1", "shift_type": "morning"},
            ))
            session.commit()

        data = list_events(client)

        shift = data["events"][0]
        assert shift["source_type"] == "shift"
        assert shift["editable"] is False
        assert shift["details"] == {"employee_id": "emp-1", "shift_type": "morning"}

    def test_other_organizations_hidden(self, client):
        create_event(client)

        data = list_events(client, headers={"X-Organization-ID": "org-2"})

        assert data["total"] == 0

    def test_source_type_filter(self, client):
        create_event(client)

        assert list_events(client, source_types="shift,task")["total"] == 0
        assert list_events(client, source_types="manual")["total"] == 1

    def test_status_filter(self, client):
        create_event(client, status="tentative")

        assert list_events(client, status="confirmed")["total"] == 0
        assert list_events(client, status="tentative")["total"] == 1

    @pytest.mark.parametrize("params", [{"status": "maybe"}, {"source_types": "manual,bogus"}])
    def test_invalid_filters(self, client, params):
        response = client.get("/calendar/events", params={**JANUARY, **params}, headers=HEADERS)

        assert response.status_code == 422
        assert response.json()["retryable"] is False


class TestMutationEndpoints:
    def test_create_rejects_empty_title(self, client):
        response = client.post(
            "/calendar/events",
            json={"title": "  ", "start_at": "2024-01-09T09:00:00Z"},
            headers=HEADERS,
        )

        assert response.status_code == 422

    def test_move_keeps_minute_and_duration(self, client):
        event = create_event(client)

        response = client.post(
            f"/calendar/events/{event['source_id']}/move",
            json={"new_date": "2024-01-10", "new_hour": 14},
            headers=HEADERS,
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["state"] == "committed"
        assert data["event"]["start_at"].startswith("2024-01-10T14:15:00")
        assert data["event"]["end_at"].startswith("2024-01-10T14:45:00")

        stored = list_events(client)["events"][0]
        assert stored["start_at"].startswith("2024-01-10T14:15:00")

    def test_move_read_only_source(self, client):
        response = client.post(
            "/calendar/events/s-1/move",
            params={"source_type": "shift"},
            json={"new_date": "2024-01-10", "new_hour": 14},
            headers=HEADERS,
        )

        assert response.status_code == 403
        assert response.json()["error_type"] == "ownership_violation"

    def test_resize_too_short(self, client):
        event = create_event(client)

        response = client.post(
            f"/calendar/events/{event['source_id']}/resize",
            json={"start_at": "2024-01-09T09:00:00Z", "end_at": "2024-01-09T09:05:00Z"},
            headers=HEADERS,
        )

        assert response.status_code == 422

    def test_update(self, client):
        event = create_event(client)

        response = client.patch(
            f"/calendar/events/{event['source_id']}",
            json={"title": "Retro", "color": "#ff0000"},
            headers=HEADERS,
        )

        assert response.status_code == 200
        assert response.json()["event"]["title"] == "Retro"
        assert list_events(client)["events"][0]["color"] == "#ff0000"

    def test_update_missing_event(self, client):
        response = client.patch(
            "/calendar/events/00000000-0000-0000-0000-000000000000",
            json={"title": "x"},
            headers=HEADERS,
        )

        assert response.status_code == 404
        assert response.json()["error_type"] == "not_found"

    def test_update_other_organization(self, client):
        event = create_event(client)

        response = client.patch(
            f"/calendar/events/{event['source_id']}",
            json={"title": "x"},
            headers={"X-Organization-ID": "org-2"},
        )

        assert response.status_code == 404

    def test_delete(self, client):
        event = create_event(client)

        response = client.delete(f"/calendar/events/{event['source_id']}", headers=HEADERS)

        assert response.status_code == 200
        assert response.json()["state"] == "committed"
        assert list_events(client)["total"] == 0

    def test_rejected_write_is_conflict(self, client):
        event = create_event(client)
        writer = deps.get_components().writer

        with patch.object(writer, "update_patch", side_effect=RuntimeError("locked")):
            response = client.post(
                f"/calendar/events/{event['source_id']}/move",
                json={"new_date": "2024-01-10", "new_hour": 14},
                headers=HEADERS,
            )

        assert response.status_code == 409
        assert response.json()["error_type"] == "write_conflict"
        assert list_events(client)["events"][0]["start_at"].startswith("2024-01-09T09:15:00")


class TestExceptionEndpoints:
    @pytest.fixture
    def series(self, client):
        return create_event(client, title="Weekly", start_at="2024-01-01T09:00:00Z",
                            end_at="2024-01-01T10:00:00Z", recurrence_rule="FREQ=WEEKLY;COUNT=3")

    def test_cancel_occurrence(self, client, series):
        response = client.post(
            f"/calendar/events/{series['source_id']}/exceptions",
            json={"original_date": "2024-01-08", "exception_type": "cancelled"},
            headers=HEADERS,
        )

        assert response.status_code == 201, response.text
        assert response.json()["calendar_event_id"] == series["source_id"]
        days = [e["start_at"][:10] for e in list_events(client)["events"]]
        assert days == ["2024-01-01", "2024-01-15"]

    def test_modify_then_remove(self, client, series):
        created = client.post(
            f"/calendar/events/{series['source_id']}/exceptions",
            json={"original_date": "2024-01-15", "exception_type": "modified", "new_title": "Moved"},
            headers=HEADERS,
        ).json()

        listed = client.get(f"/calendar/events/{series['source_id']}/exceptions", headers=HEADERS).json()
        assert [e["id"] for e in listed] == [created["id"]]
        assert list_events(client)["events"][2]["title"] == "Moved"

        response = client.patch(
            f"/calendar/exceptions/{created['id']}",
            json={"new_title": "Moved again"},
            headers=HEADERS,
        )
        assert response.status_code == 200
        assert response.json()["new_title"] == "Moved again"

        response = client.delete(f"/calendar/exceptions/{created['id']}", headers=HEADERS)
        assert response.status_code == 204
        assert list_events(client)["events"][2]["title"] == "Weekly"

    def test_non_recurring_anchor(self, client):
        event = create_event(client)

        response = client.post(
            f"/calendar/events/{event['source_id']}/exceptions",
            json={"original_date": "2024-01-09", "exception_type": "cancelled"},
            headers=HEADERS,
        )

        assert response.status_code == 422

    def test_exception_of_other_organization(self, client, series):
        created = client.post(
            f"/calendar/events/{series['source_id']}/exceptions",
            json={"original_date": "2024-01-08", "exception_type": "cancelled"},
            headers=HEADERS,
        ).json()

        response = client.delete(f"/calendar/exceptions/{created['id']}", headers={"X-Organization-ID": "org-2"})

        assert response.status_code == 404


class TestRecurrencePreviewEndpoint:
    def test_preview(self, client):
        response = client.get(
            "/calendar/recurrence/preview",
            params={"rule": "freq=weekly;count=3", "start": "2024-01-01T09:00:00", "limit": 10},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["rule"] == "FREQ=WEEKLY;COUNT=3"
        assert data["description"] == "Weekly (3 occurrences)"
        assert [o["start"][:10] for o in data["occurrences"]] == ["2024-01-01", "2024-01-08", "2024-01-15"]

    def test_limit_clamped(self, client, settings):
        response = client.get(
            "/calendar/recurrence/preview",
            params={"rule": "FREQ=DAILY", "start": "2024-01-01T09:00:00", "limit": 500},
        )

        assert len(response.json()["occurrences"]) == settings.preview_max_occurrences

    def test_end_before_start(self, client):
        response = client.get(
            "/calendar/recurrence/preview",
            params={"rule": "FREQ=DAILY", "start": "2024-01-01T09:00:00", "end": "2024-01-01T08:00:00"},
        )

        assert response.status_code == 422
