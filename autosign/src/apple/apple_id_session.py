import hashlib
import http.cookiejar as cookielib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

import requests

from autosign.logger import debug, get_console
from autosign.src.core.errors import CodesignError, ErrorKind

console = get_console()

AUTH_CHECK_URL = "https://developer.apple.com/services-account/v1/certificates"
RESOURCES_URL = "https://developer.apple.com/account/resources"


@dataclass
class AppleIDSession:
    session: requests.Session
    csrf: str
    csrf_ts: str
    team_id: str


def session_paths(apple_id: str, session_dir: Path) -> Tuple[Path, Path]:
    """Cookie jar and session data paths for an Apple ID"""
    # First 8 chars of the email hash, matching what the login tool writes
    session_id = f"auth-{hashlib.sha256(apple_id.encode()).hexdigest()[:8]}"
    return (
        session_dir / f"{session_id}.cookies",
        session_dir / f"{session_id}.session",
    )


def _cookie_value(session: requests.Session, name: str) -> Optional[str]:
    for cookie in session.cookies:
        if cookie.name == name:
            return cookie.value
    return None


def _is_session_valid(session: requests.Session, session_data: dict) -> bool:
    if not session_data.get("session_id") or not session_data.get("scnt"):
        console.print("[yellow]No session data found")
        return False

    headers = {
        "Accept": "application/json, text/plain, */*",
        "Content-Type": "application/vnd.api+json",
        "X-Requested-With": "XMLHttpRequest",
        "X-Apple-ID-Session-Id": session_data["session_id"],
        "scnt": session_data["scnt"],
    }
    response = session.get(AUTH_CHECK_URL, headers=headers)
    debug(f"Auth status check response: {response.status_code}")
    # A logged in session gets 403 for a plain GET on this endpoint
    return response.status_code == 403


def _fetch_csrf(session: requests.Session) -> Tuple[Optional[str], Optional[str]]:
    response = session.get(RESOURCES_URL)
    if response.status_code != 200:
        return None, None

    csrf = _cookie_value(session, "csrf") or response.headers.get("csrf")
    csrf_ts = _cookie_value(session, "csrf_ts") or response.headers.get("csrf_ts")

    if not csrf:
        match = re.search(r'csrf["\']\s*:\s*["\']([^"\']+)["\']', response.text)
        if match:
            csrf = match.group(1)
    if not csrf_ts:
        match = re.search(r'csrf_ts["\']\s*:\s*["\']([^"\']+)["\']', response.text)
        if match:
            csrf_ts = match.group(1)
    return csrf, csrf_ts


def load_apple_id_session(
    apple_id: str,
    session_dir: Path,
    team_id: str,
    session: Optional[requests.Session] = None,
) -> AppleIDSession:
    """Load a session persisted by an Apple ID login and fetch its CSRF tokens"""
    if not team_id:
        raise CodesignError(ErrorKind.AUTH, "team ID is required for Apple ID sessions")

    cookie_path, session_path = session_paths(apple_id, Path(session_dir))
    console.print(f"Attempting to load session from: {session_dir}")

    session = session or requests.Session()
    try:
        with open(session_path) as f:
            session_data = json.load(f)
        if cookie_path.exists():
            jar = cookielib.LWPCookieJar(filename=str(cookie_path))
            jar.load(ignore_discard=True, ignore_expires=True)
            session.cookies = jar
    except (OSError, ValueError, cookielib.LoadError) as e:
        raise CodesignError(
            ErrorKind.AUTH,
            f"failed to load Apple ID session for {apple_id}: {e}",
        ) from e

    try:
        if not _is_session_valid(session, session_data):
            raise CodesignError(
                ErrorKind.AUTH,
                f"Apple ID session for {apple_id} is invalid, please log in again",
            )
        csrf, csrf_ts = _fetch_csrf(session)
    except requests.RequestException as e:
        raise CodesignError(ErrorKind.AUTH, f"Apple ID session check failed: {e}") from e

    if not csrf or not csrf_ts:
        raise CodesignError(ErrorKind.AUTH, "failed to retrieve CSRF tokens")

    console.print("[green]Successfully loaded existing session!")
    debug(f"CSRF: {csrf}")
    debug(f"CSRF_TS: {csrf_ts}")
    return AppleIDSession(session=session, csrf=csrf, csrf_ts=csrf_ts, team_id=team_id)
