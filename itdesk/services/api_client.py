from __future__ import annotations

import logging
import os
from typing import Any

import httpx

from itdesk.domain.errors import (
    ConsoleError,
    NoTokenError,
    NotAuthenticatedError,
    ServerError,
    SessionExpiredError,
)
from itdesk.infra.connectivity import OnlineCheck, classify_transport_error
from itdesk.services.session_manager import API_BASE_URL, SessionManager

logger = logging.getLogger(__name__)

HTTP_TIMEOUT_SECONDS = float(os.getenv("ITDESK_HTTP_TIMEOUT_SECONDS", "15"))


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(response: httpx.Response) -> str:
    body = _decode_body(response)
    if isinstance(body, dict):
        message = body.get("error") or body.get("message")
        if message:
            return str(message)
    return response.reason_phrase or "request failed"


class ApiClient:
    """Authenticated JSON client for the console backend.

    Every call is gated on the session: no user means no request. A single
    401 triggers one token refresh and one retry; a second failure ends in
    :class:`SessionExpiredError`.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
        online_check: OnlineCheck | None = None,
    ) -> None:
        self._session = session
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS))
        self._owns_http = http_client is None
        self._base_url = (base_url or API_BASE_URL).rstrip("/")
        self._online_check = online_check

    @property
    def session(self) -> SessionManager:
        return self._session

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def _send(
        self,
        endpoint: str,
        method: str,
        token: str,
        body: Any,
        headers: dict[str, str] | None,
    ) -> httpx.Response:
        merged = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            merged.update(headers)
        kwargs: dict[str, Any] = {"headers": merged}
        if method != "GET" and body is not None:
            kwargs["json"] = body
        try:
            return await self._http.request(method, f"{self._base_url}{endpoint}", **kwargs)
        except httpx.TransportError as exc:
            error = await classify_transport_error(endpoint, method, exc, self._online_check)
            logger.warning("%s %s failed (%s)", method, endpoint, error.category)
            raise error from exc

    async def call(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        body: Any = None,
        headers: dict[str, str] | None = None,
    ) -> Any:
        method = method.upper()
        if not self._session.is_authenticated:
            raise NotAuthenticatedError()
        token = await self._session.get_token()
        if not token:
            raise NoTokenError()

        response = await self._send(endpoint, method, token, body, headers)
        if response.status_code == 401:
            logger.info("%s %s returned 401; refreshing token once", method, endpoint)
            refreshed = await self._session.refresh_token()
            if not refreshed or refreshed == token:
                await self._session.expire()
                raise SessionExpiredError()
            response = await self._send(endpoint, method, refreshed, body, headers)
            if not response.is_success:
                logger.warning("%s %s retry returned %s", method, endpoint, response.status_code)
                await self._session.expire()
                raise SessionExpiredError()

        if not response.is_success:
            error: ConsoleError = ServerError(response.status_code, _error_message(response))
            logger.warning("%s %s returned %s (%s)", method, endpoint, response.status_code, error.category)
            raise error

        logger.debug("%s %s -> %s", method, endpoint, response.status_code)
        return _decode_body(response)

    async def execute(self, endpoint: str, method: str = "GET", body: Any = None) -> Any:
        return await self.call(endpoint, method=method, body=body)
