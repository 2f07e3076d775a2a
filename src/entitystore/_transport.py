"""HTTP transport for the remote persistence service."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from typing import Any, Protocol

import aiohttp

from entitystore._constants import CONNECTIVITY_STATUSES, USER_AGENT, VALIDATION_STATUSES
from entitystore._redact import redact_for_log
from entitystore.config import StoreConfig
from entitystore.exceptions import (
    ConflictError,
    ConnectivityError,
    NotFoundError,
    RemoteServiceError,
    StoreConfigError,
    StoreOperationError,
    ValidationError,
)

_logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Structural transport interface used by :class:`RemoteAdapter`.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`HttpTransport`) concrete.
    """

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        ...


def _error_message(text: str) -> str:
    """Pull a human message out of an error body (``{"error": ...}`` or ``{"message": ...}``)."""
    try:
        body = json.loads(text)
    except json.JSONDecodeError:
        return text[:200]
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return text[:200]


def error_for_status(status: int, text: str, *, method: str, path: str) -> StoreOperationError:
    """Map a non-2xx HTTP status to the store's error taxonomy."""
    message = f"{method} {path} returned HTTP {status}: {_error_message(text)}"
    error_cls: type[StoreOperationError]
    if status in VALIDATION_STATUSES:
        error_cls = ValidationError
    elif status == 404:
        error_cls = NotFoundError
    elif status == 409:
        error_cls = ConflictError
    elif status in CONNECTIVITY_STATUSES:
        error_cls = ConnectivityError
    else:
        error_cls = RemoteServiceError
    return error_cls(message, status_code=status)


class HttpTransport:
    """JSON-over-HTTP transport backed by an :class:`aiohttp.ClientSession`."""

    def __init__(self, config: StoreConfig, http_session: aiohttp.ClientSession) -> None:
        if config.base_url is None:
            raise StoreConfigError("HttpTransport requires config.base_url")
        self._base_url = config.base_url
        self._http = http_session
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout)

    async def request_json(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, Any] | None = None,
    ) -> Any:
        """Send one request and return the decoded JSON body (``None`` when empty).

        Connection failures and timeouts raise :class:`ConnectivityError`;
        HTTP error statuses are mapped by :func:`error_for_status`.
        """
        url = f"{self._base_url}{path}"
        headers: dict[str, str] = {
            "accept": "application/json",
            "user-agent": USER_AGENT,
        }
        body: str | None = None
        if payload is not None:
            headers["content-type"] = "application/json; charset=UTF-8"
            body = json.dumps(payload, separators=(",", ":"), default=str)

        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("%s %s %s", method, url, redact_for_log(payload) if payload is not None else "")

        try:
            async with self._http.request(method, url, data=body, headers=headers, timeout=self._timeout) as resp:
                status = resp.status
                text = await resp.text()
        except aiohttp.ClientError as exc:
            raise ConnectivityError(f"{method} {path} failed: {exc}") from exc
        except TimeoutError as exc:
            raise ConnectivityError(f"{method} {path} timed out") from exc

        if status >= 400:
            raise error_for_status(status, text, method=method, path=path)

        if not text.strip():
            return None

        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            raise RemoteServiceError(
                f"Invalid JSON from {method} {path}: {text[:200]}",
                status_code=status,
            ) from exc
