import pytest
import requests

from autosign.src.apple.transport import (
    APIKeyTransport,
    PortalAPIError,
    RequestTracker,
    SessionTransport,
)
from autosign.src.apple.apple_id_session import AppleIDSession
from autosign.src.core.errors import CodesignError, ErrorKind

from conftest import FakeResponse, FakeSession, make_ec_private_key


class RecordingTracker(RequestTracker):
    def __init__(self):
        self.requests = []
        self.errors = []

    def track_api_request(self, method, host, path, status_code, duration, is_retry):
        self.requests.append((method, host, path, status_code, is_retry))

    def track_api_error(self, method, host, path, status_code, message):
        self.errors.append((method, path, status_code))


def make_transport(responses, tracker=None):
    sleeps = []
    session = FakeSession(responses)
    transport = APIKeyTransport(
        "KEY123",
        "issuer-id",
        make_ec_private_key(),
        session=session,
        tracker=tracker,
        sleep=sleeps.append,
    )
    return transport, session, sleeps


def error_body(code, title="", detail=""):
    return {"errors": [{"code": code, "status": "", "title": title, "detail": detail}]}


def test_successful_request_returns_json():
    transport, session, _ = make_transport([FakeResponse(200, {"data": []})])

    assert transport.request("GET", "profiles", params={"limit": 1}) == {"data": []}
    call = session.calls[0]
    assert call["url"] == "https://api.appstoreconnect.apple.com/v1/profiles"
    assert call["params"] == {"limit": 1}
    assert call["headers"]["Authorization"].startswith("Bearer ")


def test_empty_body_returns_none():
    transport, _, _ = make_transport([FakeResponse(204)])

    assert transport.request("DELETE", "profiles/123") is None


def test_non_json_success_body_is_an_api_error():
    tracker = RecordingTracker()
    transport, _, _ = make_transport(
        [FakeResponse(200, body=b"<html>proxy login</html>")], tracker=tracker
    )

    with pytest.raises(CodesignError) as excinfo:
        transport.request("GET", "profiles")
    assert excinfo.value.kind == ErrorKind.API
    assert "invalid JSON response" in str(excinfo.value)
    assert tracker.errors == [("GET", "/v1/profiles", 200)]


def test_full_relationship_url_is_kept():
    transport, session, _ = make_transport([FakeResponse(200, {"data": []})])

    transport.request("GET", "https://api.appstoreconnect.apple.com/v1/profiles/1/certificates")
    assert session.calls[0]["url"] == "https://api.appstoreconnect.apple.com/v1/profiles/1/certificates"


def test_server_errors_are_retried_with_backoff():
    transport, session, sleeps = make_transport(
        [FakeResponse(500), FakeResponse(502), FakeResponse(200, {"data": []})]
    )

    assert transport.request("GET", "devices") == {"data": []}
    assert len(session.calls) == 3
    assert sleeps == [1.0, 2.0]


def test_retries_are_bounded():
    transport, session, sleeps = make_transport([FakeResponse(500) for _ in range(5)])

    with pytest.raises(PortalAPIError) as excinfo:
        transport.request("GET", "devices")
    assert excinfo.value.status_code == 500
    assert len(session.calls) == 5
    assert len(sleeps) == 4


def test_rate_limit_waits_for_retry_after():
    transport, _, sleeps = make_transport(
        [
            FakeResponse(429, headers={"Retry-After": "3", "X-Rate-Limit": "user-hour-lim:3600"}),
            FakeResponse(200, {"data": []}),
        ]
    )

    transport.request("GET", "devices")
    assert sleeps == [3.0]


def test_missing_agreement_is_retried():
    transport, session, _ = make_transport(
        [
            FakeResponse(403, error_body("FORBIDDEN.REQUIRED_AGREEMENTS_MISSING_OR_EXPIRED")),
            FakeResponse(200, {"data": []}),
        ]
    )

    transport.request("GET", "devices")
    assert len(session.calls) == 2


def test_unauthorized_regenerates_token():
    transport, session, _ = make_transport(
        [FakeResponse(401, error_body("NOT_AUTHORIZED")), FakeResponse(200, {"data": []})]
    )

    transport.request("GET", "devices")
    first = session.calls[0]["headers"]["Authorization"]
    second = session.calls[1]["headers"]["Authorization"]
    assert first != second


def test_client_error_is_not_retried():
    transport, session, sleeps = make_transport(
        [FakeResponse(404, error_body("NOT_FOUND", "The specified resource does not exist", "no profile"))]
    )

    with pytest.raises(PortalAPIError) as excinfo:
        transport.request("GET", "profiles/1")

    error = excinfo.value
    assert error.kind == ErrorKind.API
    assert error.status_code == 404
    assert error.errors[0].code == "NOT_FOUND"
    assert str(error) == (
        "GET https://api.appstoreconnect.apple.com/v1/profiles/1: 404\n"
        "- NOT_FOUND: The specified resource does not exist: no profile"
    )
    assert len(session.calls) == 1
    assert sleeps == []


def test_network_errors_are_retried():
    transport, session, sleeps = make_transport(
        [requests.ConnectionError("reset"), FakeResponse(200, {"data": []})]
    )

    assert transport.request("GET", "devices") == {"data": []}
    assert sleeps == [1.0]


def test_every_attempt_is_tracked():
    tracker = RecordingTracker()
    transport, _, _ = make_transport(
        [FakeResponse(500), FakeResponse(400, error_body("PARAMETER_ERROR"))], tracker
    )

    with pytest.raises(PortalAPIError):
        transport.request("GET", "devices")

    assert tracker.requests == [
        ("GET", "api.appstoreconnect.apple.com", "/v1/devices", 500, False),
        ("GET", "api.appstoreconnect.apple.com", "/v1/devices", 400, True),
    ]
    assert tracker.errors == [("GET", "/v1/devices", 400)]


def test_enterprise_uses_enterprise_host():
    transport = APIKeyTransport(
        "KEY123", "issuer-id", make_ec_private_key(), enterprise=True, session=FakeSession()
    )

    assert transport.url_for("devices") == "https://api.enterprise.developer.apple.com/v1/devices"
    assert transport.token.audience == "apple-developer-enterprise-v1"


def test_session_transport_overrides_get_and_adds_team():
    session = FakeSession([FakeResponse(200, {"data": []}), FakeResponse(201, {"data": {}})])
    apple_id_session = AppleIDSession(
        session=session, csrf="token", csrf_ts="123", team_id="TEAM123456"
    )
    transport = SessionTransport(apple_id_session, sleep=lambda s: None)

    transport.request("GET", "bundleIds", params={"filter[identifier]": "io.example"})
    transport.request("POST", "profiles", json_body={"data": {"type": "profiles", "attributes": {}}})

    get_call, post_call = session.calls
    assert get_call["method"] == "POST"
    assert get_call["headers"]["X-HTTP-Method-Override"] == "GET"
    assert get_call["json"]["teamId"] == "TEAM123456"
    assert "filter[identifier]=io.example" in get_call["json"]["urlEncodedQueryParams"]
    assert post_call["headers"]["csrf"] == "token"
    assert post_call["json"]["data"]["attributes"]["teamId"] == "TEAM123456"


def test_session_transport_reports_expired_session():
    session = FakeSession([FakeResponse(401)])
    apple_id_session = AppleIDSession(session=session, csrf="t", csrf_ts="1", team_id="TEAM")
    transport = SessionTransport(apple_id_session, sleep=lambda s: None)

    with pytest.raises(CodesignError) as excinfo:
        transport.request("GET", "devices")
    assert excinfo.value.kind == ErrorKind.AUTH
