import json
from datetime import datetime, timedelta, timezone

import aiohttp
import pytest

from caseload.domain.entities import EntityType, Student
from caseload.domain.errors import AuthFailure, Conflict, NetworkFailure, NotFound, ValidationFailure
from caseload.remote.base import EQ, GTE, IS_NULL, Filter, Query
from caseload.remote.postgrest import PostgrestBackend, encode_query, error_for_status

NOW = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

STUDENT_ROW = {
    "id": "S1",
    "student_id": "S100",
    "first_name": "Ann",
    "last_name": "Lee",
    "grade_level": "9",
}


class _DummyResponse:
    def __init__(self, *, status: int, body) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        if self._body is None:
            return ""
        return json.dumps(self._body)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


def _install_dummy_client_session(monkeypatch, *, capture: dict, responses: list) -> None:
    class _DummySession:
        def __init__(self, *, timeout: aiohttp.ClientTimeout) -> None:
            self._timeout = timeout
            self.closed = False

        def request(self, method, url, *, params=None, data=None, headers=None):
            capture.setdefault("calls", []).append(
                {"method": method, "url": url, "params": params, "data": data, "headers": headers}
            )
            response = responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            status, body = response
            return _DummyResponse(status=status, body=body)

        async def close(self) -> None:
            self.closed = True

    monkeypatch.setattr(aiohttp, "ClientSession", lambda *, timeout: _DummySession(timeout=timeout))


def _backend() -> PostgrestBackend:
    return PostgrestBackend("https://db.example.org/", api_key="anon-key", clock=lambda: NOW)


def test_encode_query_builds_postgrest_params():
    query = Query(
        filters=(Filter("student_id", EQ, "S1"), Filter("start_time", GTE, NOW), Filter("accepted_at", IS_NULL, True)),
        order_by="start_time",
        descending=True,
        search="ann, lee",
        search_fields=("first_name", "last_name"),
    )

    assert encode_query(query) == [
        ("select", "*"),
        ("student_id", "eq.S1"),
        ("start_time", f"gte.{NOW.isoformat()}"),
        ("accepted_at", "is.null"),
        ("or", "(first_name.ilike.*ann  lee*,last_name.ilike.*ann  lee*)"),
        ("order", "start_time.desc"),
    ]


@pytest.mark.parametrize(
    "status, body, expected",
    [
        (401, {"message": "JWT expired"}, AuthFailure),
        (403, None, AuthFailure),
        (400, {"code": "42501", "message": "permission denied"}, AuthFailure),
        (404, None, NotFound),
        (406, {"code": "PGRST116", "message": "0 rows"}, NotFound),
        (409, {"code": "23505", "message": "duplicate key"}, Conflict),
        (400, {"code": "23502", "message": "null value"}, ValidationFailure),
        (422, None, ValidationFailure),
        (500, None, NetworkFailure),
        (503, {"message": "upstream down"}, NetworkFailure),
    ],
)
def test_error_for_status_mapping(status, body, expected):
    assert isinstance(error_for_status(status, body, entity_type="student"), expected)


@pytest.mark.asyncio
async def test_fetch_parses_entities(monkeypatch):
    capture: dict = {}
    _install_dummy_client_session(monkeypatch, capture=capture, responses=[(200, [STUDENT_ROW])])
    backend = _backend()

    rows = await backend.fetch(EntityType.STUDENT, Query(order_by="last_name"))

    assert rows == [Student(**STUDENT_ROW)]
    assert rows[0].full_name == "Ann Lee"
    call = capture["calls"][0]
    assert call["method"] == "GET"
    assert call["url"] == "https://db.example.org/rest/v1/students"
    assert ("order", "last_name.asc") in call["params"]
    assert call["headers"]["apikey"] == "anon-key"
    assert call["headers"]["Authorization"] == "Bearer anon-key"
    await backend.close()


@pytest.mark.asyncio
async def test_single_fetch_without_rows_is_not_found(monkeypatch):
    _install_dummy_client_session(monkeypatch, capture={}, responses=[(200, [])])
    backend = _backend()

    with pytest.raises(NotFound) as excinfo:
        await backend.fetch(EntityType.STUDENT, Query(filters=(Filter("id", EQ, "S9"),), single=True))

    assert excinfo.value.entity_id == "S9"


@pytest.mark.asyncio
async def test_create_asks_for_representation(monkeypatch):
    capture: dict = {}
    _install_dummy_client_session(monkeypatch, capture=capture, responses=[(201, [STUDENT_ROW])])
    backend = _backend()

    created = await backend.create(
        EntityType.STUDENT,
        {"id": "temp-1", "student_id": "S100", "first_name": "Ann", "last_name": "Lee", "grade_level": "9"},
    )

    call = capture["calls"][0]
    assert created.id == "S1"
    assert call["method"] == "POST"
    assert call["headers"]["Prefer"] == "return=representation"
    assert "id" not in json.loads(call["data"])


@pytest.mark.asyncio
async def test_rejected_write_raises_typed_error(monkeypatch):
    _install_dummy_client_session(
        monkeypatch,
        capture={},
        responses=[(409, {"code": "23505", "message": "duplicate key value"})],
    )
    backend = _backend()

    with pytest.raises(Conflict):
        await backend.create(EntityType.STUDENT, {"student_id": "S100"})


@pytest.mark.asyncio
async def test_delete_expired_counts_deleted_rows(monkeypatch):
    capture: dict = {}
    _install_dummy_client_session(monkeypatch, capture=capture, responses=[(200, [{"id": "a"}, {"id": "b"}])])
    backend = _backend()

    deleted = await backend.delete_expired("invitations")

    call = capture["calls"][0]
    assert deleted == 2
    assert call["method"] == "DELETE"
    assert call["url"].endswith("/invitations")
    assert ("expires_at", f"lt.{NOW.isoformat()}") in call["params"]
    assert ("accepted_at", "is.null") in call["params"]


@pytest.mark.asyncio
async def test_delete_expired_rejects_unknown_category(monkeypatch):
    _install_dummy_client_session(monkeypatch, capture={}, responses=[])

    with pytest.raises(ValidationFailure):
        await _backend().delete_expired("sessions")


@pytest.mark.asyncio
async def test_validate_checks_setup_tokens_then_invitations(monkeypatch):
    capture: dict = {}
    invitation = {
        "token": "invite-1",
        "email": "counselor@school.org",
        "role": "counselor",
        "tenant_id": "T1",
        "expires_at": (NOW + timedelta(days=7)).isoformat().replace("+00:00", "Z"),
    }
    _install_dummy_client_session(monkeypatch, capture=capture, responses=[(200, []), (200, [invitation])])

    validation = await _backend().validate("invite-1")

    assert validation.is_valid
    assert validation.claims.email == "counselor@school.org"
    assert validation.expires_at == NOW + timedelta(days=7)
    tables = [call["url"].rsplit("/", 1)[-1] for call in capture["calls"]]
    assert tables == ["setup_tokens", "invitations"]
    assert ("used_at", "is.null") in capture["calls"][0]["params"]


@pytest.mark.asyncio
async def test_validate_expired_token(monkeypatch):
    row = {"token": "setup-1", "expires_at": (NOW - timedelta(minutes=1)).isoformat()}
    _install_dummy_client_session(monkeypatch, capture={}, responses=[(200, [row])])

    validation = await _backend().validate("setup-1")

    assert not validation.is_valid


@pytest.mark.asyncio
async def test_validate_blank_token_skips_backend(monkeypatch):
    capture: dict = {}
    _install_dummy_client_session(monkeypatch, capture=capture, responses=[])

    validation = await _backend().validate("  ")

    assert not validation.is_valid
    assert "calls" not in capture


@pytest.mark.asyncio
async def test_transport_error_becomes_network_failure(monkeypatch):
    _install_dummy_client_session(
        monkeypatch,
        capture={},
        responses=[aiohttp.ClientConnectionError("connection refused")],
    )

    with pytest.raises(NetworkFailure):
        await _backend().fetch(EntityType.STUDENT, Query())
