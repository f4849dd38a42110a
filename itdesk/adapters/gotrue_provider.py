from __future__ import annotations

import asyncio
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from itdesk.domain.errors import ProviderAuthError
from itdesk.domain.models import AuthEvent, AuthEventType, ProviderSession, now_utc
from itdesk.infra.token_store import TokenStore

logger = logging.getLogger(__name__)

IDENTITY_URL = os.getenv("ITDESK_IDENTITY_URL", "http://localhost:54321/auth/v1")
ANON_KEY = os.getenv("ITDESK_ANON_KEY", "")
REFRESH_MARGIN_SECONDS = 60.0
REFRESH_TOKEN_KEY = os.getenv("ITDESK_REFRESH_TOKEN_KEY", "auth_refresh_token")


class GoTrueIdentityProvider:
    """Identity provider backed by a GoTrue (Supabase Auth) server.

    The current session lives in memory. When a ``session_store`` is given the
    refresh token is also written there, and ``get_session`` restores the
    session from it after a restart. ``get_session`` refreshes the session
    transparently when it is about to expire, the same way the browser SDK
    does, and every change is published to subscribers.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        anon_key: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        refresh_margin_seconds: float = REFRESH_MARGIN_SECONDS,
        session_store: TokenStore | None = None,
    ) -> None:
        self._base_url = (base_url or IDENTITY_URL).rstrip("/")
        self._anon_key = anon_key if anon_key is not None else ANON_KEY
        self._http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(15.0))
        self._owns_http = http_client is None
        self._refresh_margin_seconds = max(refresh_margin_seconds, 0.0)
        self._session: ProviderSession | None = None
        self._session_store = session_store
        self._restore_lock = asyncio.Lock()
        self._subscribers: list[asyncio.Queue[AuthEvent]] = []

    def _headers(self, bearer: str | None = None) -> dict[str, str]:
        headers = {"apikey": self._anon_key, "Content-Type": "application/json"}
        headers["Authorization"] = f"Bearer {bearer or self._anon_key}"
        return headers

    def _emit(self, event_type: AuthEventType, session: ProviderSession | None) -> None:
        event = AuthEvent(event=event_type, session=session)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue[AuthEvent]:
        queue: asyncio.Queue[AuthEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AuthEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @staticmethod
    def _parse_session(body: dict[str, Any], previous: ProviderSession | None = None) -> ProviderSession:
        expires_at: datetime | None = None
        if isinstance(body.get("expires_at"), int | float):
            expires_at = datetime.fromtimestamp(body["expires_at"], tz=UTC)
        elif isinstance(body.get("expires_in"), int | float):
            expires_at = now_utc() + timedelta(seconds=body["expires_in"])
        user = body.get("user") or {}
        return ProviderSession(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token") or (previous.refresh_token if previous else None),
            expires_at=expires_at,
            user_id=user.get("id") or (previous.user_id if previous else None),
            email=user.get("email") or (previous.email if previous else None),
        )

    @staticmethod
    def _error_from(response: httpx.Response) -> ProviderAuthError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        code = body.get("error_code") or body.get("error")
        message = body.get("msg") or body.get("error_description") or body.get("message") or response.reason_phrase
        return ProviderAuthError(str(message), code=str(code) if code else None, status=response.status_code)

    async def _token_grant(self, grant_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        response = await self._http.post(
            f"{self._base_url}/token",
            params={"grant_type": grant_type},
            json=payload,
            headers=self._headers(),
        )
        if response.status_code >= 400:
            raise self._error_from(response)
        body = response.json()
        if not isinstance(body, dict) or "access_token" not in body:
            raise ProviderAuthError("malformed token response", status=response.status_code)
        return body

    def _remember(self, session: ProviderSession) -> None:
        if self._session_store is not None and session.refresh_token:
            self._session_store.set(session.refresh_token)

    def _forget(self) -> None:
        if self._session_store is not None:
            self._session_store.clear()

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        body = await self._token_grant("password", {"email": email, "password": password})
        self._session = self._parse_session(body)
        self._remember(self._session)
        self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        session = self._session
        self._session = None
        self._forget()
        try:
            if session is not None:
                response = await self._http.post(
                    f"{self._base_url}/logout",
                    headers=self._headers(session.access_token),
                )
                if response.status_code >= 400 and response.status_code != 401:
                    raise self._error_from(response)
        finally:
            self._emit(AuthEventType.SIGNED_OUT, None)

    async def refresh_session(self) -> ProviderSession | None:
        session = self._session
        if session is None or not session.refresh_token:
            return None
        try:
            body = await self._token_grant("refresh_token", {"refresh_token": session.refresh_token})
        except ProviderAuthError as exc:
            if exc.status is not None and 400 <= exc.status < 500:
                logger.warning("Refresh token rejected (%s); dropping session", exc.code or exc.status)
                self._session = None
                self._forget()
                self._emit(AuthEventType.SIGNED_OUT, None)
                return None
            raise
        self._session = self._parse_session(body, previous=session)
        self._remember(self._session)
        self._emit(AuthEventType.TOKEN_REFRESHED, self._session)
        return self._session

    async def _restore(self) -> ProviderSession | None:
        async with self._restore_lock:
            if self._session is not None:
                return self._session
            refresh_token = self._session_store.get() if self._session_store is not None else None
            if not refresh_token:
                return None
            try:
                body = await self._token_grant("refresh_token", {"refresh_token": refresh_token})
            except ProviderAuthError as exc:
                if exc.status is not None and 400 <= exc.status < 500:
                    logger.info("Stored refresh token rejected (%s); starting signed out", exc.code or exc.status)
                    self._forget()
                    return None
                raise
            self._session = self._parse_session(body)
            if not self._session.refresh_token:
                self._session = self._session.model_copy(update={"refresh_token": refresh_token})
            self._remember(self._session)
            logger.info("Restored identity session for %s", self._session.email or self._session.user_id)
            self._emit(AuthEventType.SIGNED_IN, self._session)
            return self._session

    async def get_session(self) -> ProviderSession | None:
        session = self._session
        if session is None:
            return await self._restore()
        if session.expires_within(self._refresh_margin_seconds):
            return await self.refresh_session()
        return session

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()
