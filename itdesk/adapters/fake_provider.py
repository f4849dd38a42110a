from __future__ import annotations

import asyncio
from dataclasses import dataclass
from hashlib import sha1

from itdesk.domain.errors import ProviderAuthError
from itdesk.domain.models import AuthEvent, AuthEventType, ProviderSession
from itdesk.infra.auth import create_access_token, token_expires_at


@dataclass
class FakeAccount:
    user_id: str
    email: str
    password: str
    confirmed: bool = True


class FakeIdentityProvider:
    """In-memory identity provider with knobs for simulating provider faults."""

    def __init__(
        self,
        *,
        token_ttl_minutes: float = 60.0,
        sign_in_delay_seconds: float = 0.0,
        fail_sign_out: bool = False,
        fail_get_session: bool = False,
        rate_limited: bool = False,
    ) -> None:
        self._token_ttl_minutes = max(token_ttl_minutes, 0.01)
        self._sign_in_delay_seconds = max(sign_in_delay_seconds, 0.0)
        self.fail_sign_out = fail_sign_out
        self.fail_get_session = fail_get_session
        self.rate_limited = rate_limited
        self._accounts: dict[str, FakeAccount] = {}
        self._session: ProviderSession | None = None
        self._subscribers: list[asyncio.Queue[AuthEvent]] = []
        self.sign_in_calls = 0
        self.sign_out_calls = 0
        self.refresh_calls = 0

    def _user_id_for(self, email: str) -> str:
        digest = sha1(email.encode(), usedforsecurity=False).hexdigest()
        return f"user-{digest[:12]}"

    def add_account(self, email: str, password: str, *, user_id: str | None = None, confirmed: bool = True) -> FakeAccount:
        account = FakeAccount(
            user_id=user_id or self._user_id_for(email),
            email=email,
            password=password,
            confirmed=confirmed,
        )
        self._accounts[email.lower()] = account
        return account

    def _issue(self, account: FakeAccount) -> ProviderSession:
        token = create_access_token(
            user_id=account.user_id,
            email=account.email,
            expires_minutes=self._token_ttl_minutes,
        )
        return ProviderSession(
            access_token=token,
            refresh_token=f"refresh-{account.user_id}",
            expires_at=token_expires_at(token),
            user_id=account.user_id,
            email=account.email,
        )

    def _emit(self, event_type: AuthEventType, session: ProviderSession | None) -> None:
        event = AuthEvent(event=event_type, session=session)
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    @property
    def current_session(self) -> ProviderSession | None:
        return self._session

    def subscribe(self) -> asyncio.Queue[AuthEvent]:
        queue: asyncio.Queue[AuthEvent] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[AuthEvent]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def sign_in(self, email: str, password: str) -> ProviderSession:
        self.sign_in_calls += 1
        if self._sign_in_delay_seconds > 0:
            await asyncio.sleep(self._sign_in_delay_seconds)
        if self.rate_limited:
            raise ProviderAuthError("Too many requests", code="over_request_rate_limit", status=429)
        account = self._accounts.get(email.lower())
        if account is None:
            raise ProviderAuthError("User not found", code="user_not_found", status=400)
        if account.password != password:
            raise ProviderAuthError("Invalid login credentials", code="invalid_credentials", status=400)
        if not account.confirmed:
            raise ProviderAuthError("Email not confirmed", code="email_not_confirmed", status=400)
        self._session = self._issue(account)
        self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        self.sign_out_calls += 1
        if self.fail_sign_out:
            raise ConnectionError("identity provider unreachable")
        self._session = None
        self._emit(AuthEventType.SIGNED_OUT, None)

    async def get_session(self) -> ProviderSession | None:
        if self.fail_get_session:
            raise ConnectionError("identity provider unreachable")
        return self._session

    async def refresh_session(self) -> ProviderSession | None:
        self.refresh_calls += 1
        if self._session is None or self._session.email is None:
            return None
        account = self._accounts.get(self._session.email.lower())
        if account is None:
            return None
        self._session = self._issue(account)
        self._emit(AuthEventType.TOKEN_REFRESHED, self._session)
        return self._session

    # Simulation triggers

    def start_session(self, email: str) -> ProviderSession:
        """Pretend a session survived from a previous run."""
        account = self._accounts[email.lower()]
        self._session = self._issue(account)
        return self._session

    def rotate_silently(self) -> ProviderSession | None:
        if self._session is None or self._session.email is None:
            return None
        self._session = self._issue(self._accounts[self._session.email.lower()])
        return self._session

    def expire_silently(self) -> None:
        self._session = None

    def revoke(self) -> None:
        self._session = None
        self._emit(AuthEventType.SIGNED_OUT, None)

    def emit_refresh(self) -> ProviderSession | None:
        session = self.rotate_silently()
        if session is not None:
            self._emit(AuthEventType.TOKEN_REFRESHED, session)
        return session
