"""
Zoom participant-report client (server-to-server OAuth).
"""

from typing import Any, Dict, List
from urllib.parse import quote

import requests

from util.logging import logger

from ..core.errors import AttendanceCheckError, ReportNotReady
from .base import IAttendanceVerifier
from .token_cache import TokenCache

ZOOM_API_BASE_URL = "https://api.zoom.us/v2"
ZOOM_OAUTH_URL = "https://zoom.us/oauth/token"

# "Meeting does not exist" / report not generated yet
REPORT_NOT_READY_CODES = {3001}


def _error_body(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class ZoomAttendanceVerifier(IAttendanceVerifier):
    """Reads the past-meeting participant report and returns participant emails."""

    def __init__(self, account_id: str, client_id: str, client_secret: str, timeout: float = 15.0,
                 page_size: int = 300, session: requests.Session = None,
                 api_base_url: str = ZOOM_API_BASE_URL, oauth_url: str = ZOOM_OAUTH_URL):
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.page_size = page_size
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_url = oauth_url
        self.session = session or requests.Session()
        self.token_cache = TokenCache(self._fetch_token)

    def _fetch_token(self):
        if not (self.account_id and self.client_id and self.client_secret):
            raise AttendanceCheckError("Zoom API credentials missing")

        logger.info("Fetching new Zoom access token")
        try:
            response = self.session.post(
                self.oauth_url,
                params={"grant_type": "account_credentials", "account_id": self.account_id},
                auth=(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AttendanceCheckError(f"Failed to fetch Zoom access token: {e}") from e

        body = _error_body(response)
        if response.status_code != 200 or not body.get("access_token"):
            reason = body.get("reason") or body.get("message") or f"HTTP {response.status_code}"
            raise AttendanceCheckError(f"Failed to fetch Zoom access token: {reason}")

        return body["access_token"], body.get("expires_in", 3600)

    def _get(self, url: str, params: Dict[str, Any]) -> requests.Response:
        token = self.token_cache.get()
        try:
            return self.session.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise AttendanceCheckError(f"Zoom request failed: {e}") from e

    def get_attendees(self, meeting_id: str) -> List[str]:
        url = f"{self.api_base_url}/report/meetings/{quote(str(meeting_id), safe='')}/participants"
        attendees = []
        next_page_token = None
        seen_tokens = set()
        reauthenticated = False

        while True:
            params = {"page_size": self.page_size}
            if next_page_token:
                params["next_page_token"] = next_page_token

            response = self._get(url, params)

            if response.status_code == 401 and not reauthenticated:
                # token revoked or rotated before its advertised expiry
                self.token_cache.invalidate()
                reauthenticated = True
                continue

            body = _error_body(response)
            if response.status_code == 404 or body.get("code") in REPORT_NOT_READY_CODES:
                raise ReportNotReady(f"Participant report not available for meeting {meeting_id}")
            if response.status_code != 200:
                message = body.get("message") or f"HTTP {response.status_code}"
                raise AttendanceCheckError(f"Failed to fetch participants for meeting {meeting_id}: {message}")
            if "participants" not in body:
                # an unreadable report must not be mistaken for an empty one
                raise AttendanceCheckError(f"Malformed participant report for meeting {meeting_id}")

            for participant in body["participants"] or []:
                email = participant.get("user_email") or participant.get("email")
                if email and email.strip():
                    attendees.append(email.strip())

            next_page_token = body.get("next_page_token")
            if not next_page_token:
                break
            if next_page_token in seen_tokens:
                # never return a partial list
                raise AttendanceCheckError(f"Participant report for meeting {meeting_id} repeats page token")
            seen_tokens.add(next_page_token)

        logger.debug(f"Found {len(attendees)} participants with email for meeting {meeting_id}")
        return attendees
