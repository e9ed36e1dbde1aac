"""HTTP boundary of the client.

Every response is classified exactly once, here, into one of three results:
``Ok`` (success with a JSON body), ``OkNoBody`` (success without one) and
``Err``. Callers branch on the type and never look at the raw response.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import requests

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Something went wrong, please try again later."
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


@dataclass(frozen=True)
class Ok:
    data: Any
    status: int = 200


@dataclass(frozen=True)
class OkNoBody:
    status: int = 204


@dataclass(frozen=True)
class Err:
    message: str
    status: Optional[int] = None
    # structured message from the body, None when the server sent none
    detail: Optional[str] = None
    transport: bool = False


ApiResult = Union[Ok, OkNoBody, Err]


def _structured_message(resp: requests.Response) -> Optional[str]:
    if "application/json" not in resp.headers.get("content-type", ""):
        return None
    try:
        body = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        for key in ("message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return None


def to_result(resp: requests.Response) -> ApiResult:
    if not resp.ok:
        detail = _structured_message(resp)
        message = detail or resp.reason or f"HTTP {resp.status_code}"
        return Err(message, status=resp.status_code, detail=detail)
    if "application/json" in resp.headers.get("content-type", ""):
        try:
            return Ok(resp.json(), status=resp.status_code)
        except ValueError:
            logger.warning("Undecodable JSON body on %s %s", resp.status_code, resp.url)
    return OkNoBody(status=resp.status_code)


class ApiClient:
    """Thin wrapper over a ``requests.Session`` bound to one server.

    The session keeps the auth cookie between calls. When ``csrf`` is on, the
    token from ``GET /api/csrf`` is fetched lazily and sent with every unsafe
    request in the ``X-CSRFToken`` header.
    """

    def __init__(self, base_url: str, session: requests.Session | None = None, timeout: float = 10.0, csrf: bool = True):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.csrf = csrf
        self._csrf_token: str | None = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _ensure_csrf_token(self) -> Optional[Err]:
        if not self.csrf or self._csrf_token:
            return None
        result = self._send("GET", "/api/csrf")
        if isinstance(result, Ok) and isinstance(result.data, dict) and result.data.get("csrfToken"):
            self._csrf_token = result.data["csrfToken"]
            return None
        if isinstance(result, Err):
            return result
        return Err(GENERIC_FAILURE, status=result.status)

    def _send(self, method: str, path: str, payload: Any = None) -> ApiResult:
        headers = {"Accept": "application/json"}
        if method in UNSAFE_METHODS:
            # over HTTPS the CSRF check also requires a same-origin Referer
            headers["Referer"] = f"{self.base_url}/"
            if self._csrf_token:
                headers["X-CSRFToken"] = self._csrf_token
        try:
            resp = self.session.request(
                method,
                self._url(path),
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.RequestException:
            logger.exception("%s %s failed before a response was received", method, path)
            return Err(GENERIC_FAILURE, transport=True)
        result = to_result(resp)
        if isinstance(result, Err):
            logger.info("%s %s -> %s %s", method, path, result.status, result.message)
        else:
            logger.debug("%s %s -> %s", method, path, result.status)
        return result

    def request(self, method: str, path: str, payload: Any = None) -> ApiResult:
        method = method.upper()
        if method in UNSAFE_METHODS:
            failure = self._ensure_csrf_token()
            if failure is not None:
                return failure
        return self._send(method, path, payload)

    def get(self, path: str) -> ApiResult:
        return self.request("GET", path)

    def post(self, path: str, payload: Any = None) -> ApiResult:
        return self.request("POST", path, payload)

    def put(self, path: str, payload: Any = None) -> ApiResult:
        return self.request("PUT", path, payload)

    def reset_csrf(self) -> None:
        """Forget the CSRF token (the server rotates it with the session)."""
        self._csrf_token = None
