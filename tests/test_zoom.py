"""
Zoom participant-report client against a mocked HTTP session.
"""

import pytest
import requests
from unittest.mock import MagicMock

from pay2ping.core.errors import AttendanceCheckError, ReportNotReady
from pay2ping.services.zoom import ZoomAttendanceVerifier


def response(status_code=200, body=None):
    resp = MagicMock(spec=requests.Response)
    resp.status_code = status_code
    if body is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = body
    return resp


def token_response(token="tok-1"):
    return response(200, {"access_token": token, "expires_in": 3600})


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.post.return_value = token_response()
    return session


@pytest.fixture
def verifier(session):
    return ZoomAttendanceVerifier("acct", "client", "secret", session=session)


class TestParticipantReport:
    """Test report parsing and pagination."""

    def test_single_page(self, session, verifier):
        """Test emails are collected from the report."""
        session.get.return_value = response(200, {
            "participants": [
                {"name": "Alice", "user_email": "alice@example.com"},
                {"name": "Dial-in", "user_email": ""},
                {"name": "Bob", "email": " bob@example.com "},
            ],
            "next_page_token": "",
        })

        assert verifier.get_attendees("98765") == ["alice@example.com", "bob@example.com"]

        url = session.get.call_args[0][0]
        assert url == "https://api.zoom.us/v2/report/meetings/98765/participants"
        assert session.get.call_args[1]["headers"]["Authorization"] == "Bearer tok-1"

    def test_pagination(self, session, verifier):
        """Test every page of the report is read."""
        session.get.side_effect = [
            response(200, {"participants": [{"user_email": "a@x.com"}], "next_page_token": "p2"}),
            response(200, {"participants": [{"user_email": "b@x.com"}], "next_page_token": ""}),
        ]

        assert verifier.get_attendees("1") == ["a@x.com", "b@x.com"]
        assert session.get.call_args_list[1][1]["params"]["next_page_token"] == "p2"

    def test_meeting_uuid_escaped(self, session, verifier):
        """Test meeting identifiers with slashes are URL-encoded."""
        session.get.return_value = response(200, {"participants": []})
        verifier.get_attendees("/abc==")
        assert session.get.call_args[0][0].endswith("/report/meetings/%2Fabc%3D%3D/participants")

    def test_empty_report(self, session, verifier):
        """Test a report with no participants is a valid empty answer."""
        session.get.return_value = response(200, {"participants": []})
        assert verifier.get_attendees("1") == []


class TestReportErrors:
    """Test error classification."""

    def test_not_found_is_not_ready(self, session, verifier):
        """Test a 404 means the report is not available yet, not that nobody came."""
        session.get.return_value = response(404, {"code": 3001, "message": "Meeting does not exist"})
        with pytest.raises(ReportNotReady):
            verifier.get_attendees("1")

    def test_not_ready_code(self, session, verifier):
        """Test Zoom's not-ready error code on other statuses."""
        session.get.return_value = response(400, {"code": 3001, "message": "not ready"})
        with pytest.raises(ReportNotReady):
            verifier.get_attendees("1")

    def test_server_error(self, session, verifier):
        """Test other failures surface as AttendanceCheckError."""
        session.get.return_value = response(500, {"message": "internal"})
        with pytest.raises(AttendanceCheckError, match="internal"):
            verifier.get_attendees("1")

    def test_malformed_body(self, session, verifier):
        """Test a 200 without a participant list is an error, not an empty meeting."""
        session.get.return_value = response(200, {"unexpected": True})
        with pytest.raises(AttendanceCheckError, match="Malformed"):
            verifier.get_attendees("1")

    def test_repeated_page_token(self, session, verifier):
        """Test a report that keeps returning the same page token fails instead of looping."""
        session.get.return_value = response(200, {"participants": [{"user_email": "a@x.com"}],
                                                  "next_page_token": "p2"})
        with pytest.raises(AttendanceCheckError, match="repeats page token"):
            verifier.get_attendees("1")
        assert session.get.call_count == 2

    def test_transport_error(self, session, verifier):
        """Test a network error is wrapped."""
        session.get.side_effect = requests.ConnectionError("dns failure")
        with pytest.raises(AttendanceCheckError, match="Zoom request failed"):
            verifier.get_attendees("1")


class TestAuthentication:
    """Test OAuth token handling."""

    def test_token_request(self, session, verifier):
        """Test the server-to-server OAuth grant."""
        session.get.return_value = response(200, {"participants": []})
        verifier.get_attendees("1")

        args, kwargs = session.post.call_args
        assert args[0] == "https://zoom.us/oauth/token"
        assert kwargs["params"] == {"grant_type": "account_credentials", "account_id": "acct"}
        assert kwargs["auth"] == ("client", "secret")

    def test_token_cached_across_calls(self, session, verifier):
        """Test one token serves several lookups."""
        session.get.return_value = response(200, {"participants": []})
        verifier.get_attendees("1")
        verifier.get_attendees("2")
        assert session.post.call_count == 1

    def test_revoked_token_refreshed_once(self, session, verifier):
        """Test a 401 triggers one re-authentication."""
        session.post.side_effect = [token_response("tok-1"), token_response("tok-2")]
        session.get.side_effect = [
            response(401, {"message": "Invalid access token"}),
            response(200, {"participants": [{"user_email": "a@x.com"}]}),
        ]

        assert verifier.get_attendees("1") == ["a@x.com"]
        assert session.get.call_args[1]["headers"]["Authorization"] == "Bearer tok-2"

    def test_repeated_401_fails(self, session, verifier):
        """Test a second 401 is reported rather than retried forever."""
        session.get.return_value = response(401, {"message": "Invalid access token"})
        with pytest.raises(AttendanceCheckError):
            verifier.get_attendees("1")
        assert session.get.call_count == 2

    def test_token_failure(self, session, verifier):
        """Test an OAuth rejection surfaces as AttendanceCheckError."""
        session.post.return_value = response(400, {"reason": "Invalid client_id or client_secret"})
        with pytest.raises(AttendanceCheckError, match="Invalid client_id"):
            verifier.get_attendees("1")
        session.get.assert_not_called()

    def test_missing_credentials(self, session):
        """Test a verifier without credentials never calls out."""
        verifier = ZoomAttendanceVerifier(None, None, None, session=session)
        with pytest.raises(AttendanceCheckError, match="credentials missing"):
            verifier.get_attendees("1")
        session.post.assert_not_called()
