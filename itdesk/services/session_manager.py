from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Coroutine
from typing import Any

import httpx
from pydantic import ValidationError

from itdesk.adapters.base import IdentityProvider
from itdesk.domain.errors import (
    ConsoleError,
    LoginSupersededError,
    NetworkError,
    ProviderAuthError,
    ServerError,
    SessionTransitionError,
    classify_privilege_denial,
    classify_provider_error,
)
from itdesk.domain.models import AuthEvent, AuthEventType, SessionSnapshot, SessionUser
from itdesk.domain.state_machine import SessionState, can_transition
from itdesk.infra.connectivity import OnlineCheck, classify_transport_error
from itdesk.infra.events import EventBus, event_bus
from itdesk.infra.token_store import MemoryTokenStore, TokenStore

logger = logging.getLogger(__name__)

API_BASE_URL = os.getenv("ITDESK_API_BASE_URL", "http://localhost:54321/functions/v1/make-server")
ANON_KEY = os.getenv("ITDESK_ANON_KEY", "")
LIVENESS_INTERVAL_SECONDS = float(os.getenv("ITDESK_LIVENESS_INTERVAL_SECONDS", "300"))
FORCED_LOGOUT_DELAY_SECONDS = float(os.getenv("ITDESK_FORCED_LOGOUT_DELAY_SECONDS", "2.0"))
PRIVILEGED_CHECK_PATH = "/auth/login"


class SessionManager:
    """Single owner of the console's authentication state.

    Initial resolution, provider events, the liveness timer and interactive
    login/logout all end in :meth:`_commit`, which swaps state, user and token
    in one synchronous step. Logouts bump ``_logout_generation``; any async
    step that started before the bump drops its result instead of committing.
    """

    def __init__(
        self,
        *,
        provider: IdentityProvider,
        http_client: httpx.AsyncClient,
        token_store: TokenStore | None = None,
        bus: EventBus | None = None,
        api_base_url: str | None = None,
        anon_key: str | None = None,
        liveness_interval_seconds: float | None = None,
        online_check: OnlineCheck | None = None,
    ) -> None:
        self._provider = provider
        self._http = http_client
        self._store = token_store or MemoryTokenStore()
        self._bus = bus or event_bus
        self._api_base_url = (api_base_url or API_BASE_URL).rstrip("/")
        self._anon_key = anon_key if anon_key is not None else ANON_KEY
        interval = liveness_interval_seconds or LIVENESS_INTERVAL_SECONDS
        self._liveness_interval_seconds = max(interval, 0.01)
        self._online_check = online_check

        self._state = SessionState.RESOLVING
        self._user: SessionUser | None = None
        self._token: str | None = None
        self._loading = True
        self._logout_generation = 0

        self._events: asyncio.Queue[AuthEvent] | None = None
        self._consumer_task: asyncio.Task[None] | None = None
        self._liveness_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False
        self._closed = False

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> SessionUser | None:
        return self._user

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def is_authenticated(self) -> bool:
        return self._user is not None

    @property
    def bus(self) -> EventBus:
        return self._bus

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(state=self._state, user=self._user, token=self._token, loading=self._loading)

    # Transition plumbing

    def _write_cache(self, token: str | None) -> None:
        try:
            if token is None:
                self._store.clear()
            else:
                self._store.set(token)
        except Exception:
            logger.warning("Token cache write failed", exc_info=True)

    def _commit(
        self,
        state: SessionState,
        *,
        user: SessionUser | None,
        token: str | None,
        event_type: str | None = None,
        reason: str | None = None,
    ) -> None:
        if not can_transition(self._state, state):
            raise SessionTransitionError(f"illegal session transition {self._state} -> {state}")
        self._state = state
        self._user = user
        self._token = token
        self._write_cache(token)
        if event_type is not None:
            payload: dict[str, Any] = {"state": state.value}
            if reason is not None:
                payload["reason"] = reason
            self._bus.publish_dict(event_type, payload, actor_id=user.id if user else None)

    def _force_logout(self, reason: str) -> None:
        self._logout_generation += 1
        logger.info("Session cleared (%s)", reason)
        self._commit(
            SessionState.UNAUTHENTICATED,
            user=None,
            token=None,
            event_type="session.signed_out",
            reason=reason,
        )

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background session task failed", exc_info=exc)

    async def _terminate_provider_session(self) -> None:
        try:
            await self._provider.sign_out()
        except Exception:
            logger.warning("Provider sign-out failed", exc_info=True)

    async def _privileged_check(self, access_token: str) -> SessionUser:
        url = f"{self._api_base_url}{PRIVILEGED_CHECK_PATH}"
        try:
            response = await self._http.post(
                url,
                json={"access_token": access_token},
                headers={
                    "Authorization": f"Bearer {self._anon_key}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.TransportError as exc:
            raise await classify_transport_error(PRIVILEGED_CHECK_PATH, "POST", exc, self._online_check) from exc

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        if not response.is_success:
            raise classify_privilege_denial(response.status_code, body)
        user_data = body.get("user")
        if not isinstance(user_data, dict):
            raise ServerError(response.status_code, "privileged check returned no user")
        try:
            return SessionUser.model_validate(user_data)
        except ValidationError as exc:
            raise ServerError(response.status_code, "privileged check returned an invalid user") from exc

    # Lifecycle

    async def start(self) -> SessionSnapshot:
        if self._started:
            return self.snapshot()
        self._started = True
        self._events = self._provider.subscribe()
        self._consumer_task = asyncio.create_task(self._consume_events())
        await self._resolve_initial_session()
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        return self.snapshot()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._events is not None:
            self._provider.unsubscribe(self._events)
            self._events = None
        tasks = [task for task in (self._consumer_task, self._liveness_task) if task is not None]
        tasks.extend(self._background)
        self._consumer_task = None
        self._liveness_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def liveness_running(self) -> bool:
        return self._liveness_task is not None and not self._liveness_task.done()

    async def _resolve_initial_session(self) -> None:
        self._drain_events()
        generation = self._logout_generation
        try:
            try:
                session = await self._provider.get_session()
            except Exception:
                logger.warning("Could not read provider session on startup", exc_info=True)
                session = None

            if session is None:
                self._settle_unauthenticated("no_session")
                return

            try:
                user = await self._privileged_check(session.access_token)
            except ConsoleError as exc:
                logger.info("Stored session failed privileged check (%s)", exc.category)
                await self._terminate_provider_session()
                self._settle_unauthenticated(exc.category.value)
                return

            if generation != self._logout_generation:
                logger.info("Session ended while resolving; discarding stored session")
                return
            self._commit(
                SessionState.AUTHENTICATED,
                user=user,
                token=session.access_token,
                event_type="session.authenticated",
            )
        finally:
            self._loading = False
            self._bus.publish_dict("session.resolved", {"state": self._state.value})

    def _settle_unauthenticated(self, reason: str) -> None:
        if self._user is not None and self._state == SessionState.AUTHENTICATED:
            return
        self._commit(SessionState.UNAUTHENTICATED, user=None, token=None, reason=reason)

    # Provider events

    def _drain_events(self) -> None:
        queue = self._events
        if queue is None:
            return
        while not queue.empty():
            self._dispatch(queue.get_nowait())

    async def _consume_events(self) -> None:
        while True:
            queue = self._events
            if queue is None:
                return
            event = await queue.get()
            self._dispatch(event)

    def _dispatch(self, event: AuthEvent) -> None:
        try:
            self._handle_event(event)
        except Exception:
            logger.exception("Failed to apply provider event %s", event.event)

    def _handle_event(self, event: AuthEvent) -> None:
        if event.event == AuthEventType.SIGNED_OUT or event.session is None:
            self._force_logout("provider_signed_out")
            return
        if self._user is None:
            # Sign-ins only become a session through login(); nothing to update.
            logger.debug("Ignoring %s without an authenticated user", event.event)
            return
        new_token = event.session.access_token
        rotated = new_token != self._token
        if rotated:
            self._commit(
                SessionState.AUTHENTICATED,
                user=self._user,
                token=new_token,
                event_type="session.token_refreshed",
            )
        if rotated or event.event == AuthEventType.TOKEN_REFRESHED:
            self._spawn(self._revalidate(new_token))

    async def _revalidate(self, token: str) -> None:
        generation = self._logout_generation
        try:
            user = await self._privileged_check(token)
        except NetworkError as exc:
            logger.warning("Could not re-validate refreshed token (%s); keeping session", exc.category)
            return
        except ConsoleError as exc:
            if generation != self._logout_generation or self._token != token:
                return
            logger.warning("Refreshed token failed privileged check (%s)", exc.category)
            self._force_logout("revoked")
            await self._terminate_provider_session()
            return
        if generation != self._logout_generation or self._token != token:
            return
        self._commit(
            SessionState.AUTHENTICATED,
            user=user,
            token=token,
            event_type="session.revalidated",
        )

    # Liveness

    async def _liveness_loop(self) -> None:
        while True:
            await asyncio.sleep(self._liveness_interval_seconds)
            await self.check_liveness()

    async def check_liveness(self) -> bool:
        try:
            session = await self._provider.get_session()
        except Exception:
            logger.warning("Session liveness check failed", exc_info=True)
            session = None
        if session is not None:
            return True
        if self._user is not None or self._token is not None:
            self._force_logout("liveness")
        return False

    # Public operations

    async def login(self, email: str, password: str) -> SessionUser:
        self._drain_events()
        generation = self._logout_generation
        try:
            session = await self._provider.sign_in(email, password)
        except ProviderAuthError as exc:
            error = classify_provider_error(exc)
            logger.info("Provider rejected sign-in (%s)", error.category)
            raise error from exc
        except httpx.TransportError as exc:
            raise await classify_transport_error("sign_in", "POST", exc, self._online_check) from exc

        try:
            user = await self._privileged_check(session.access_token)
        except ConsoleError as exc:
            logger.info("Sign-in denied by privileged check (%s)", exc.category)
            await self._terminate_provider_session()
            raise

        if generation != self._logout_generation:
            logger.info("Sign-in superseded by a logout")
            await self._terminate_provider_session()
            raise LoginSupersededError()

        self._commit(
            SessionState.AUTHENTICATED,
            user=user,
            token=session.access_token,
            event_type="session.authenticated",
        )
        return user

    async def logout(self) -> None:
        try:
            await self._provider.sign_out()
        except Exception:
            logger.warning("Provider sign-out failed; clearing local session anyway", exc_info=True)
        finally:
            self._force_logout("logout")

    async def expire(self, reason: str = "session_expired") -> None:
        """Forced logout after the server rejected a refreshed credential."""
        if self._user is None and self._token is None:
            return
        self._force_logout(reason)
        await self._terminate_provider_session()

    async def get_token(self) -> str | None:
        try:
            session = await self._provider.get_session()
        except Exception:
            logger.warning("Could not read provider session for token", exc_info=True)
            return None
        if session is None:
            if self._user is not None or self._token is not None:
                self._force_logout("no_provider_session")
            return None
        if self._user is not None and session.access_token != self._token:
            self._commit(
                SessionState.AUTHENTICATED,
                user=self._user,
                token=session.access_token,
                event_type="session.token_refreshed",
            )
        return session.access_token

    def get_token_sync(self) -> str | None:
        """Cached token; may be one rotation behind the provider."""
        try:
            return self._store.get()
        except Exception:
            logger.warning("Token cache read failed", exc_info=True)
            return self._token

    async def refresh_token(self) -> str | None:
        try:
            session = await self._provider.refresh_session()
        except Exception:
            logger.warning("Token refresh failed", exc_info=True)
            return None
        if session is None:
            return None
        if self._user is not None and session.access_token != self._token:
            self._commit(
                SessionState.AUTHENTICATED,
                user=self._user,
                token=session.access_token,
                event_type="session.token_refreshed",
            )
        return session.access_token

    def schedule_forced_logout(self, delay_seconds: float | None = None) -> asyncio.Task[None]:
        delay = FORCED_LOGOUT_DELAY_SECONDS if delay_seconds is None else max(delay_seconds, 0.0)

        async def _later() -> None:
            await asyncio.sleep(delay)
            await self.logout()

        return self._spawn(_later())
