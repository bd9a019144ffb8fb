import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional
from urllib.parse import urlencode, urlparse

import requests
from rich.markup import escape

from autosign.logger import debug, get_console
from autosign.src.apple.apple_id_session import AppleIDSession
from autosign.src.apple.auth import APIKeyToken
from autosign.src.core.errors import CodesignError, ErrorKind

console = get_console()

API_BASE_URL = "https://api.appstoreconnect.apple.com/"
API_AUDIENCE = "appstoreconnect-v1"
ENTERPRISE_API_BASE_URL = "https://api.enterprise.developer.apple.com/"
ENTERPRISE_API_AUDIENCE = "apple-developer-enterprise-v1"
PORTAL_BASE_URL = "https://developer.apple.com/services-account/"
API_VERSION = "v1"

MAX_RETRIES = 4
INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 30.0

AGREEMENT_MISSING_CODE = "FORBIDDEN.REQUIRED_AGREEMENTS_MISSING_OR_EXPIRED"
INVALID_PARAMETER_CODE = "PARAMETER_ERROR.INVALID"
INVALID_CURSOR_DETAIL = "is not a valid cursor for this request"


@dataclass
class ErrorEntry:
    code: str = ""
    status: str = ""
    id: str = ""
    title: str = ""
    detail: str = ""

    @classmethod
    def from_json(cls, data: dict) -> "ErrorEntry":
        return cls(
            code=str(data.get("code") or ""),
            status=str(data.get("status") or ""),
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            detail=str(data.get("detail") or ""),
        )


class PortalAPIError(CodesignError):
    """Non-2xx response from the Developer Portal"""

    def __init__(
        self, method: str, url: str, status_code: int, errors: List[ErrorEntry]
    ):
        self.method = method
        self.url = url
        self.status_code = status_code
        self.errors = errors

        message = f"{method} {url}: {status_code}"
        for entry in errors:
            message += f"\n- {entry.code}: {entry.title}: {entry.detail}"
        super().__init__(ErrorKind.API, message)

    @classmethod
    def from_response(cls, method: str, url: str, response) -> "PortalAPIError":
        errors = []
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            errors = [ErrorEntry.from_json(e) for e in body.get("errors") or []]
        return cls(method, url, response.status_code, errors)

    def is_cursor_invalid(self) -> bool:
        return any(
            e.code == INVALID_PARAMETER_CODE and INVALID_CURSOR_DETAIL in e.detail
            for e in self.errors
        )

    def is_required_agreement_missing(self) -> bool:
        return any(e.code == AGREEMENT_MISSING_CODE for e in self.errors)

    def contains(self, text: str) -> bool:
        return any(text in e.detail or text in e.title for e in self.errors)


class RequestTracker:
    """Receives one event per HTTP attempt, retries included"""

    def track_api_request(
        self,
        method: str,
        host: str,
        path: str,
        status_code: int,
        duration: float,
        is_retry: bool,
    ) -> None:
        pass

    def track_api_error(
        self, method: str, host: str, path: str, status_code: int, message: str
    ) -> None:
        pass

    def track_auth_error(self, message: str) -> None:
        pass


class NoOpTracker(RequestTracker):
    pass


class ConsoleTracker(RequestTracker):
    """Prints every tracked event to the shared console"""

    def track_api_request(self, method, host, path, status_code, duration, is_retry):
        retry = " (retry)" if is_retry else ""
        console.print(
            f"[dim]\\[ANALYTICS] API Request: {method} {host}{path} -> {status_code} ({duration * 1000:.0f}ms){retry}[/]"
        )

    def track_api_error(self, method, host, path, status_code, message):
        console.print(
            f"[dim]\\[ANALYTICS] API Error: {method} {host}{path} -> {status_code}: {escape(message)}[/]"
        )

    def track_auth_error(self, message):
        console.print(f"[dim]\\[ANALYTICS] Auth Error: {escape(message)}[/]")


class PortalTransport:
    """Sends JSON:API requests to a portal host with retries and tracking"""

    base_url = ""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        tracker: Optional[RequestTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
        timeout: float = 60,
    ):
        self.session = session or requests.Session()
        self.tracker = tracker or NoOpTracker()
        self.sleep = sleep
        self.timeout = timeout

    def url_for(self, endpoint: str) -> str:
        """Resolve an endpoint or a full relationship URL"""
        prefix = self.base_url + API_VERSION + "/"
        if endpoint.startswith(prefix):
            endpoint = endpoint[len(prefix):]
        return prefix + endpoint.lstrip("/")

    def prepare(
        self, method: str, url: str, params: Optional[Dict], json_body: Optional[Dict]
    ) -> Dict:
        """Build the keyword arguments of one HTTP attempt"""
        headers = {"Accept": "application/json"}
        if json_body is not None:
            headers["Content-Type"] = "application/json"
        return {
            "method": method,
            "url": url,
            "params": params,
            "json": json_body,
            "headers": headers,
            "timeout": self.timeout,
        }

    def should_retry(self, response, error: PortalAPIError) -> bool:
        status = response.status_code
        if status == 429:
            message = "Received HTTP 429 Too Many Requests"
            rate_limit = response.headers.get("X-Rate-Limit")
            if rate_limit:
                message += f" ({rate_limit})"
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                message += f", retrying the request in {retry_after} seconds..."
            else:
                message += ", retrying the request..."
            console.print(f"[yellow]{escape(message)}")
            return True
        if status == 403 and error.is_required_agreement_missing():
            console.print(
                f"[yellow]Received error {AGREEMENT_MISSING_CODE} (status 403), retrying request..."
            )
            return True
        if status >= 500:
            debug(f"Retry network error: {status}")
            return True
        return False

    def final_error(self, error: PortalAPIError) -> CodesignError:
        return error

    def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Dict] = None,
        json_body: Optional[Dict] = None,
    ) -> Optional[Dict]:
        """Perform a request and return the decoded JSON body, or None when empty"""
        url = self.url_for(endpoint)
        parsed = urlparse(url)
        host, path = parsed.netloc, parsed.path
        backoff = INITIAL_BACKOFF

        for attempt in range(MAX_RETRIES + 1):
            is_retry = attempt > 0
            kwargs = self.prepare(method, url, params, json_body)
            debug(f"{method} {url} {params or ''}")

            started = time.monotonic()
            try:
                response = self.session.request(**kwargs)
            except requests.RequestException as e:
                self.tracker.track_api_request(
                    method, host, path, 0, time.monotonic() - started, is_retry
                )
                if attempt < MAX_RETRIES:
                    debug(f"Retry network error: {e}")
                    self.sleep(backoff)
                    backoff = min(backoff * 2, MAX_BACKOFF)
                    continue
                self.tracker.track_api_error(method, host, path, 0, str(e))
                raise CodesignError(ErrorKind.API, f"{method} {url}: {e}") from e

            self.tracker.track_api_request(
                method,
                host,
                path,
                response.status_code,
                time.monotonic() - started,
                is_retry,
            )

            if 200 <= response.status_code <= 299:
                if not response.content:
                    return None
                try:
                    return response.json()
                except ValueError as e:
                    self.tracker.track_api_error(
                        method, host, path, response.status_code, "invalid JSON body"
                    )
                    raise CodesignError(
                        ErrorKind.API, f"{method} {url}: invalid JSON response: {e}"
                    ) from e

            error = PortalAPIError.from_response(method, url, response)
            if attempt < MAX_RETRIES and self.should_retry(response, error):
                self.sleep(self._wait_time(response, backoff))
                backoff = min(backoff * 2, MAX_BACKOFF)
                continue

            self.tracker.track_api_error(
                method, host, path, response.status_code, str(error)
            )
            final = self.final_error(error)
            if final is error:
                raise error
            raise final from error

    @staticmethod
    def _wait_time(response, backoff: float) -> float:
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return float(retry_after)
                except ValueError:
                    pass
        return backoff


class APIKeyTransport(PortalTransport):
    """App Store Connect API transport authenticated with an API key"""

    def __init__(
        self,
        key_id: str,
        issuer_id: str,
        private_key: str,
        enterprise: bool = False,
        session: Optional[requests.Session] = None,
        tracker: Optional[RequestTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(session=session, tracker=tracker, sleep=sleep)
        self.base_url = ENTERPRISE_API_BASE_URL if enterprise else API_BASE_URL
        self.token = APIKeyToken(
            key_id,
            issuer_id,
            private_key,
            ENTERPRISE_API_AUDIENCE if enterprise else API_AUDIENCE,
            clock=clock,
            on_error=self.tracker.track_auth_error,
        )

    def prepare(self, method, url, params, json_body):
        kwargs = super().prepare(method, url, params, json_body)
        kwargs["headers"]["Authorization"] = f"Bearer {self.token.get()}"
        return kwargs

    def should_retry(self, response, error):
        if response.status_code == 401:
            debug("Received HTTP 401 (Unauthorized), retrying request...")
            self.token.invalidate()
            return True
        return super().should_retry(response, error)


class SessionTransport(PortalTransport):
    """Developer Portal web API transport over a logged in Apple ID session"""

    base_url = PORTAL_BASE_URL

    def __init__(
        self,
        apple_id_session: AppleIDSession,
        tracker: Optional[RequestTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        super().__init__(session=apple_id_session.session, tracker=tracker, sleep=sleep)
        self.apple_id_session = apple_id_session

    def prepare(self, method, url, params, json_body):
        team_id = self.apple_id_session.team_id
        headers = {
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.5",
            "Content-Type": "application/vnd.api+json",
            "X-Requested-With": "XMLHttpRequest",
        }

        if method == "GET":
            # The web API only accepts list queries as overridden POSTs
            headers["X-HTTP-Method-Override"] = "GET"
            body = {
                "urlEncodedQueryParams": urlencode(params or {}, safe="[],-"),
                "teamId": team_id,
            }
            method = "POST"
        else:
            headers["csrf"] = self.apple_id_session.csrf
            headers["csrf_ts"] = str(self.apple_id_session.csrf_ts)
            body = dict(json_body or {})
            data = body.get("data")
            if isinstance(data, dict):
                data = dict(data)
                data["attributes"] = dict(data.get("attributes") or {}, teamId=team_id)
                body["data"] = data
            else:
                body["teamId"] = team_id

        return {
            "method": method,
            "url": url,
            "json": body,
            "headers": headers,
            "timeout": self.timeout,
        }

    def final_error(self, error):
        if error.status_code == 401:
            return CodesignError(
                ErrorKind.AUTH,
                "Apple ID session expired or is not authorized, please log in again",
            )
        return error
