"""
OData executor: performs authenticated HTTP calls against SAP OData services,
with CSRF token handling and classification of upstream failures.
"""

import asyncio
import json
import re
import sys
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import requests

from .constants import (
    DEFAULT_MAX_RESPONSE_SIZE, DEFAULT_REQUEST_TIMEOUT, MAX_CACHED_SESSIONS, MODIFYING_METHODS, USER_AGENT,
)
from .errors import RemoteFault, RemoteUnavailable, RemoteUnexpectedResponse
from .models import AuthContext, ServiceDescriptor

_LEGACY_DATE = re.compile(r'^/Date\((-?\d+)([+-]\d{4})?\)/$')


def encode_query_params(params):
    """Encode query parameters properly for OData compatibility.

    OData servers (especially SAP CAP backends) don't accept '+' for spaces
    in URL parameters. They require '%20' according to RFC 3986.
    """
    encoded = urlencode(params, doseq=True, safe='$')
    # Replace '+' with '%20' for OData compatibility
    return encoded.replace('+', '%20')


def parse_legacy_date(value: str) -> Optional[str]:
    """Convert the legacy ``/Date(milliseconds)/`` format to ISO 8601."""
    match = _LEGACY_DATE.match(value)
    if not match:
        return None
    try:
        dt = datetime.fromtimestamp(int(match.group(1)) / 1000.0, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None
    return dt.strftime('%Y-%m-%dT%H:%M:%S') + 'Z'


def convert_legacy_dates(data: Any) -> Any:
    """Recursively convert legacy date strings and drop ``__metadata`` blocks."""
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if key == '__metadata':
                continue
            if isinstance(value, str):
                converted = parse_legacy_date(value)
                result[key] = converted if converted else value
            else:
                result[key] = convert_legacy_dates(value)
        return result
    if isinstance(data, list):
        return [convert_legacy_dates(item) for item in data]
    return data


class ODataExecutor:
    """Executes OData requests on behalf of the dispatcher.

    Failures are classified and never retried, apart from the CSRF token
    handshake SAP requires for modifying requests.
    """

    def __init__(self, timeout: float = DEFAULT_REQUEST_TIMEOUT, verify: bool = True,
                 max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE, max_sessions: int = MAX_CACHED_SESSIONS,
                 verbose: bool = False):
        self.timeout = timeout
        self.verify = verify
        self.max_response_size = max_response_size
        self.max_sessions = max(1, max_sessions)
        self.verbose = verbose
        # One session per (service root, credential) so cookies and CSRF tokens never cross users;
        # least recently used sessions are closed once max_sessions is exceeded
        self._sessions: "OrderedDict[Tuple[str, str], requests.Session]" = OrderedDict()
        self._lock = threading.Lock()
        self._csrf_tokens: Dict[Tuple[str, str], str] = {}

    def _log_verbose(self, message: str):
        """Prints message to stderr only if verbose mode is enabled."""
        if self.verbose:
            timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S.%f')[:-3]
            print(f"[{timestamp} Executor VERBOSE] {message}", file=sys.stderr)

    def _session_for(self, service_root: str, credential: Optional[AuthContext]) -> Tuple[requests.Session, Tuple[str, str]]:
        auth_header = credential.authorization_header if credential else ""
        key = (service_root, auth_header)
        with self._lock:
            session = self._sessions.get(key)
            if session is not None:
                self._sessions.move_to_end(key)
                return session, key
            session = requests.Session()
            session.verify = self.verify
            session.headers.update({
                'Accept': 'application/json',
                'User-Agent': USER_AGENT,
                'Content-Type': 'application/json',
            })
            if auth_header:
                session.headers['Authorization'] = auth_header
            self._sessions[key] = session
            while len(self._sessions) > self.max_sessions:
                old_key, old_session = self._sessions.popitem(last=False)
                self._csrf_tokens.pop(old_key, None)
                old_session.close()
                self._log_verbose(f"Closed idle session for {old_key[0]}")
        return session, key

    async def execute(self, method: str, service: ServiceDescriptor, path: str,
                      params: Optional[Dict[str, Any]] = None, payload: Optional[Dict[str, Any]] = None,
                      credential: Optional[AuthContext] = None) -> Any:
        """Run one request and return the unwrapped response body (``None`` for 204)."""
        if not service.service_url:
            raise RemoteUnavailable(f"Service '{service.service_id}' has no service URL configured.")
        service_root = service.service_url.rstrip('/')
        url = f"{service_root}/{path.lstrip('/')}"
        self._log_verbose(f"Requesting: {method} {url} with params {params}")
        response = await asyncio.to_thread(
            self._make_request, method, service_root, url, params, payload, credential
        )
        return self._parse_odata_response(response)

    def _fetch_csrf_token(self, session: requests.Session, service_root: str, key) -> Optional[str]:
        """Fetch CSRF token required by SAP OData services for modifying requests."""
        self._log_verbose(f"Fetching CSRF token from service root: {service_root}")
        self._csrf_tokens.pop(key, None)
        try:
            response = session.get(service_root, headers={'X-CSRF-Token': 'Fetch'}, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            self._log_verbose(f"Failed to fetch CSRF token: {e}")
            return None
        token = response.headers.get('x-csrf-token')
        if token and token.lower() not in ['fetch', 'required']:
            with self._lock:
                if key in self._sessions:
                    self._csrf_tokens[key] = token
            return token
        self._log_verbose(f"No valid CSRF token from {service_root} (got: '{token}')")
        return None

    def _make_request(self, method: str, service_root: str, url: str, params: Optional[Dict[str, Any]],
                      payload: Optional[Dict[str, Any]], credential: Optional[AuthContext]) -> requests.Response:
        """Internal helper to make requests, handling CSRF."""
        session, key = self._session_for(service_root, credential)
        is_modifying = method.upper() in MODIFYING_METHODS
        headers = {}
        if is_modifying:
            token = self._csrf_tokens.get(key) or self._fetch_csrf_token(session, service_root, key)
            if token:
                headers['X-CSRF-Token'] = token

        if params:
            url = f"{url}{'&' if '?' in url else '?'}{encode_query_params(params)}"

        kwargs = {'headers': headers, 'timeout': self.timeout}
        if payload is not None:
            kwargs['data'] = json.dumps(payload, default=str)

        try:
            response = session.request(method, url, **kwargs)
            csrf_failed = (
                is_modifying and response.status_code == 403 and
                response.headers.get('x-csrf-token', '').lower() == 'required'
            )
            if csrf_failed:
                self._log_verbose("CSRF token validation failed, attempting to refetch...")
                token = self._fetch_csrf_token(session, service_root, key)
                if token:
                    headers['X-CSRF-Token'] = token
                    response = session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise RemoteUnavailable(f"Request to {url} timed out after {self.timeout:g}s: {e}") from e
        except requests.exceptions.RequestException as e:
            raise RemoteUnavailable(f"Request to {url} failed: {e}") from e
        return response

    @staticmethod
    def _extract_odata_error(response: requests.Response) -> Optional[Tuple[str, Optional[str]]]:
        """Return (message, code) from a structured OData error body, or None."""
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get('error'), dict):
            return None
        error_obj = data['error']
        code = error_obj.get('code')
        msg = error_obj.get('message')
        if isinstance(msg, dict):
            msg = msg.get('value')
        if not msg:
            # SAP specific inner error structure
            details = (error_obj.get('innererror') or {}).get('errordetails') or []
            msg = "; ".join(str(d.get('message')) for d in details if isinstance(d, dict) and d.get('message'))
        if not msg:
            msg = json.dumps(error_obj)[:1000]
        return str(msg), code

    def _parse_odata_response(self, response: requests.Response) -> Any:
        """Parse JSON response, handling common OData v2/v4 structures and errors."""
        status = response.status_code
        if status >= 400:
            structured = self._extract_odata_error(response)
            if structured is not None:
                message, code = structured
                print(f"ERROR: OData HTTP Error {status}: {message}", file=sys.stderr)
                raise RemoteFault(message, status=status, details={"code": code})
            text = (response.text or '').strip()[:500]
            raise RemoteUnexpectedResponse(
                f"HTTP {status} {response.reason or ''}".strip() + (f": {text}" if text else ""),
                status=status,
            )

        # No Content is common for MERGE/PUT/DELETE
        if status == 204 or not response.content:
            return None

        if self.max_response_size and len(response.content) > self.max_response_size:
            raise RemoteUnexpectedResponse(
                f"Response size ({len(response.content)} bytes) exceeds maximum allowed ({self.max_response_size} bytes)",
                status=status,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteUnexpectedResponse(
                f"Non-JSON response received (Status: {status}): {(response.text or '')[:200]}",
                status=status,
            ) from e

        if isinstance(data, dict) and 'd' in data:
            # OData v2: {"d": {...}} or {"d": {"results": [...]}}
            data = data['d']
        return convert_legacy_dates(data)
