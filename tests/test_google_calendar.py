import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from googleapiclient.errors import HttpError

from services import google_calendar as gc_module
from services.google_auth import SCOPES, GoogleAuth
from services.google_calendar import CalendarProviderError, GoogleCalendar, InvalidGrantError
from services.integrations import IntegrationStore

UTC = timezone.utc


def http_error(status):
    resp = httplib2.Response({"status": status})
    content = json.dumps({"error": {"code": status, "message": "nope"}}).encode("utf-8")
    return HttpError(resp, content)


class FakeRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class FakeResource:
    def __init__(self, service, name):
        self.service = service
        self.name = name

    def _request(self, method, **params):
        self.service.requests.append((self.name, method, params))
        outcome = self.service.responses.pop(0) if self.service.responses else {}
        if isinstance(outcome, Exception):
            return FakeRequest(error=outcome)
        return FakeRequest(result=outcome)

    def list(self, **params):
        return self._request("list", **params)

    def insert(self, **params):
        return self._request("insert", **params)

    def update(self, **params):
        return self._request("update", **params)

    def delete(self, **params):
        return self._request("delete", **params)


class FakeService:
    def __init__(self):
        self.requests = []
        self.responses = []

    def events(self):
        return FakeResource(self, "events")

    def calendarList(self):
        return FakeResource(self, "calendarList")


@pytest.fixture()
def service():
    return FakeService()


@pytest.fixture()
def calendar(service):
    built = []

    def factory(name, version, credentials=None, cache_discovery=True):
        built.append((name, version, credentials, cache_discovery))
        return service

    client = GoogleCalendar("client-id", "client-secret", service_factory=factory)
    client.built = built
    client.authorize("access-token")
    return client


def test_authorize_builds_calendar_v3_service(calendar):
    (name, version, credentials, cache_discovery), = calendar.built
    assert (name, version) == ("calendar", "v3")
    assert credentials.token == "access-token"
    assert cache_discovery is False


def test_calls_before_authorize_fail():
    client = GoogleCalendar("id", "secret", service_factory=lambda *a, **k: None)
    with pytest.raises(CalendarProviderError):
        client.list_calendars()


def test_list_events_requests_expanded_instances(calendar, service):
    service.responses.append({"items": [{"id": "e1"}], "nextPageToken": "p2"})

    page = calendar.list_events(
        "primary",
        datetime(2024, 6, 1, tzinfo=UTC),
        datetime(2024, 7, 1, tzinfo=UTC),
    )

    assert page == {"items": [{"id": "e1"}], "nextPageToken": "p2"}
    _, method, params = service.requests[0]
    assert method == "list"
    assert params["calendarId"] == "primary"
    assert params["timeMin"] == "2024-06-01T00:00:00Z"
    assert params["timeMax"] == "2024-07-01T00:00:00Z"
    assert params["singleEvents"] is True
    assert params["orderBy"] == "startTime"
    assert "pageToken" not in params


def test_list_events_passes_page_token(calendar, service):
    service.responses.append({})
    page = calendar.list_events("work", datetime(2024, 6, 1, tzinfo=UTC), datetime(2024, 7, 1, tzinfo=UTC), "p2")
    assert page == {"items": []}
    assert service.requests[0][2]["pageToken"] == "p2"


@pytest.mark.parametrize(
    "status, not_found, retryable",
    [(404, True, False), (410, True, False), (403, False, False), (429, False, True), (503, False, True)],
)
def test_http_errors_are_classified(calendar, service, status, not_found, retryable):
    service.responses.append(http_error(status))
    with pytest.raises(CalendarProviderError) as excinfo:
        calendar.update_event("primary", "e1", {"summary": "x"})
    assert excinfo.value.status == status
    assert excinfo.value.not_found is not_found
    assert excinfo.value.retryable is retryable


def test_create_and_update_send_body(calendar, service):
    service.responses.extend([{"id": "new"}, {"id": "e1"}])
    assert calendar.create_event("primary", {"summary": "A"})["id"] == "new"
    assert calendar.update_event("primary", "e1", {"summary": "B"})["id"] == "e1"
    assert service.requests[0][1:] == ("insert", {"calendarId": "primary", "body": {"summary": "A"}})
    assert service.requests[1][1:] == ("update", {"calendarId": "primary", "eventId": "e1", "body": {"summary": "B"}})


def test_all_day_end_dates_are_exclusive_only_on_the_wire(calendar, service):
    payload = {"summary": "Rent", "start": {"date": "2024-06-30"}, "end": {"date": "2024-06-30"}}
    service.responses.extend(
        [
            {"id": "new", "start": {"date": "2024-06-30"}, "end": {"date": "2024-07-01"}},
            {"items": [{"id": "trip", "start": {"date": "2024-06-11"}, "end": {"date": "2024-06-14"}}]},
        ]
    )

    created = calendar.create_event("primary", payload)
    page = calendar.list_events("primary", datetime(2024, 6, 1, tzinfo=UTC), datetime(2024, 7, 1, tzinfo=UTC))

    assert service.requests[0][2]["body"]["end"] == {"date": "2024-07-01"}
    assert payload["end"] == {"date": "2024-06-30"}
    assert created["end"] == {"date": "2024-06-30"}
    assert page["items"][0]["end"] == {"date": "2024-06-13"}


def test_timed_events_pass_through_unchanged(calendar, service):
    payload = {"start": {"dateTime": "2024-06-15T13:00:00Z"}, "end": {"dateTime": "2024-06-15T14:00:00Z"}}
    service.responses.append({"id": "e1", **payload})
    assert calendar.update_event("primary", "e1", payload)["end"] == payload["end"]
    assert service.requests[0][2]["body"] == payload


@pytest.mark.parametrize("status", [404, 410])
def test_delete_of_missing_event_succeeds(calendar, service, status):
    service.responses.append(http_error(status))
    calendar.delete_event("primary", "gone")


def test_delete_forbidden_raises(calendar, service):
    service.responses.append(http_error(403))
    with pytest.raises(CalendarProviderError) as excinfo:
        calendar.delete_event("primary", "e1")
    assert excinfo.value.status == 403


def test_list_calendars_follows_pages(calendar, service):
    service.responses.extend(
        [
            {"items": [{"id": "me@example.com", "summary": "Me", "primary": True}], "nextPageToken": "2"},
            {"items": [{"id": "team"}]},
        ]
    )
    assert calendar.list_calendars() == [
        {"id": "me@example.com", "summary": "Me", "primary": True},
        {"id": "team", "summary": "team", "primary": False},
    ]
    assert [r[2]["pageToken"] for r in service.requests] == [None, "2"]


def test_refresh_access_token(monkeypatch, calendar):
    def fake_refresh(self, request):
        self.token = "renewed"
        self.expiry = datetime.now(UTC).replace(tzinfo=None) + timedelta(hours=1)

    monkeypatch.setattr(gc_module.Credentials, "refresh", fake_refresh)

    result = calendar.refresh_access_token("refresh-token")

    assert result["access_token"] == "renewed"
    assert 3500 <= result["expires_in"] <= 3600


def test_revoked_refresh_token_raises_invalid_grant(monkeypatch, calendar):
    def fake_refresh(self, request):
        raise RefreshError("invalid_grant: Token has been expired or revoked.")

    monkeypatch.setattr(gc_module.Credentials, "refresh", fake_refresh)

    with pytest.raises(InvalidGrantError):
        calendar.refresh_access_token("refresh-token")


def test_other_refresh_failures_are_not_invalid_grant(monkeypatch, calendar):
    def fake_refresh(self, request):
        raise RefreshError("internal_failure")

    monkeypatch.setattr(gc_module.Credentials, "refresh", fake_refresh)

    with pytest.raises(CalendarProviderError) as excinfo:
        calendar.refresh_access_token("refresh-token")
    assert not isinstance(excinfo.value, InvalidGrantError)


# ---------- consent flow ----------
class FakeFlow:
    def __init__(self, creds):
        self.creds = creds
        self.kwargs = None

    def run_local_server(self, **kwargs):
        self.kwargs = kwargs
        return self.creds


def test_connect_stores_granted_tokens(session_factory, tmp_path):
    expiry = datetime(2024, 6, 10, 13, 0)
    flow = FakeFlow(SimpleNamespace(token="at", refresh_token="rt", expiry=expiry, scopes=SCOPES))
    received = []

    def factory(config, scopes):
        received.append((config, scopes))
        return flow

    integrations = IntegrationStore(session_factory)
    auth = GoogleAuth(integrations, tmp_path / "missing.json", client_id="cid", client_secret="cs", flow_factory=factory)

    auth.connect("u1")

    (config, scopes), = received
    assert config["installed"]["client_id"] == "cid"
    assert scopes == SCOPES
    assert flow.kwargs["access_type"] == "offline"
    stored = integrations.get("u1")
    assert stored.connected is True
    assert stored.access_token == "at"
    assert stored.refresh_token == "rt"
    assert stored.token_expires_at == expiry


def test_reconnect_without_refresh_token_keeps_old_one(session_factory, tmp_path):
    integrations = IntegrationStore(session_factory)
    integrations.save_tokens("u1", access_token="old", refresh_token="kept", expires_at=None)
    flow = FakeFlow(SimpleNamespace(token="new", refresh_token=None, expiry=None, scopes=None))
    auth = GoogleAuth(integrations, tmp_path / "x.json", client_id="cid", client_secret="cs", flow_factory=lambda c, s: flow)

    auth.connect("u1")

    stored = integrations.get("u1")
    assert stored.access_token == "new"
    assert stored.refresh_token == "kept"


def test_connect_rejects_missing_scopes(session_factory, tmp_path):
    flow = FakeFlow(SimpleNamespace(token="at", refresh_token="rt", expiry=None, scopes=["openid"]))
    integrations = IntegrationStore(session_factory)
    auth = GoogleAuth(integrations, tmp_path / "x.json", client_id="cid", client_secret="cs", flow_factory=lambda c, s: flow)

    with pytest.raises(RuntimeError):
        auth.connect("u1")
    assert integrations.get("u1") is None


def test_client_config_from_file(tmp_path):
    path = tmp_path / "client_secret.json"
    path.write_text(json.dumps({"installed": {"client_id": "file-id", "client_secret": "file-secret"}}), encoding="utf-8")
    auth = GoogleAuth(None, path, client_id="", client_secret="")
    assert auth.client_credentials() == ("file-id", "file-secret")

    path.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError):
        auth.client_config()

    with pytest.raises(FileNotFoundError):
        GoogleAuth(None, tmp_path / "absent.json", client_id="", client_secret="").client_config()
