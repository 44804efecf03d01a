"""
HTTP for steps.

Every call carries a timeout. Transport failures and error statuses are
mapped onto StepError kinds so the scheduler can decide about retries:

- connection problems      -> NETWORK
- request timeout          -> TIMEOUT
- 429 / 503 (+Retry-After) -> DEPENDENCY
- other 5xx                -> DEPENDENCY
- 401 / 403                -> PERMISSION
- other 4xx                -> VALIDATION

URLs are checked before sending: only http(s) is allowed and loopback,
private and link-local hosts are refused unless allow_private_hosts is set.
"""

from __future__ import annotations

import ipaddress
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit

import requests
from requests.exceptions import RequestException, Timeout

from .errors import (
    DependencyError,
    NetworkError,
    PermissionDeniedError,
    StepError,
    StepTimeoutError,
    StepValidationError,
)


logger = logging.getLogger(__name__)

# Used when neither the caller nor settings give a timeout
DEFAULT_TIMEOUT = 30.0

# Error bodies are truncated to this many characters in error details
ERROR_BODY_CHARS = 1000

ALLOWED_SCHEMES = ("http", "https")


def check_url(url: str, allow_private_hosts: bool = False) -> None:
    """
    Refuse URLs a step must not call.

    Hosts are judged by their literal name or address; no DNS lookup is made.

    Raises:
        StepValidationError: malformed URL or a scheme other than http(s)
        PermissionDeniedError: loopback, private, link-local or unspecified host
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        raise StepValidationError(f"Invalid URL {url!r}: {e}") from e
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise StepValidationError(
            f"URL scheme '{parts.scheme}' is not allowed (use http or https)",
            details={"url": url},
        )
    if not host:
        raise StepValidationError(f"URL {url!r} has no host", details={"url": url})
    if allow_private_hosts:
        return

    host = host.lower().rstrip(".")
    if host == "localhost" or host.endswith(".localhost"):
        blocked = True
    else:
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            address = address.ipv4_mapped
        blocked = (
            address.is_loopback
            or address.is_private
            or address.is_link_local
            or address.is_unspecified
            or address.is_reserved
        )
    if blocked:
        raise PermissionDeniedError(
            f"Requests to private or local host '{host}' are not allowed",
            details={"url": url, "host": host},
        )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After header as seconds (delta-seconds or HTTP-date form)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_for_status(
    status_code: int,
    reason: str = "",
    body: Optional[str] = None,
    url: Optional[str] = None,
    method: Optional[str] = None,
    retry_after: Optional[str] = None,
) -> StepError:
    """StepError matching an HTTP error status."""
    message = f"HTTP {status_code}: {reason}".rstrip(": ")
    details: Dict[str, Any] = {"status_code": status_code, "url": url, "method": method}
    if body:
        details["body"] = body[:ERROR_BODY_CHARS]

    if status_code in (429, 503):
        return DependencyError(message, retry_after=parse_retry_after(retry_after), details=details)
    if status_code in (401, 403):
        return PermissionDeniedError(message, details=details)
    if 400 <= status_code < 500:
        return StepValidationError(message, details=details)
    return DependencyError(message, details=details)


class HttpResponse:
    """Status, headers and decoded body of one response."""

    def __init__(self, response: requests.Response, method: str):
        self.status_code: int = response.status_code
        self.reason: str = response.reason or ""
        self.url = str(response.url)
        self.method = method
        self.headers: Dict[str, str] = dict(response.headers)
        self.text: str = response.text
        try:
            self.body: Any = response.json()
        except ValueError:
            self.body = {"text": self.text}

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def to_payload(self) -> Dict[str, Any]:
        """Item payload emitted by the httpRequest step."""
        return {"statusCode": self.status_code, "headers": self.headers, "body": self.body}

    def raise_for_status(self) -> None:
        """Raise the StepError matching an error status."""
        if self.ok:
            return
        raise error_for_status(
            self.status_code,
            reason=self.reason,
            body=self.text,
            url=self.url,
            method=self.method,
            retry_after=self.headers.get("Retry-After"),
        )


class HttpClient:
    """
    Session-backed client; one instance per step invocation.

    Usage:
        with HttpClient(timeout=10) as client:
            response = client.send("GET", "https://api.example.com/users", params={"limit": 10})
            response.raise_for_status()
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        headers: Optional[Mapping[str, str]] = None,
        session: Optional[requests.Session] = None,
        allow_private_hosts: bool = False,
    ):
        self.timeout = timeout or DEFAULT_TIMEOUT
        self.allow_private_hosts = allow_private_hosts
        self.session = session or requests.Session()
        if headers:
            self.session.headers.update(headers)

    def send(
        self,
        method: str,
        url: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> HttpResponse:
        """
        Perform one request. Error statuses are returned, not raised.

        Raises:
            StepValidationError, PermissionDeniedError: URL refused by check_url
            StepTimeoutError: no response within the timeout
            NetworkError: transport-level failure
        """
        method = method.upper()
        check_url(url, self.allow_private_hosts)
        timeout = timeout or self.timeout
        logger.debug(f"{method} {url} (timeout {timeout}s)")
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=json,
                headers=dict(headers) if headers else None,
                timeout=timeout,
            )
        except Timeout as e:
            raise StepTimeoutError(
                f"{method} {url} timed out after {timeout}s",
                details={"url": url, "method": method, "timeout_s": timeout},
            ) from e
        except RequestException as e:
            raise NetworkError(
                f"{method} {url} failed: {e}",
                details={"url": url, "method": method},
            ) from e
        return HttpResponse(response, method)

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "HttpClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


__all__ = [
    "DEFAULT_TIMEOUT",
    "HttpClient",
    "HttpResponse",
    "check_url",
    "error_for_status",
    "parse_retry_after",
]
