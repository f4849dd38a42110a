from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
import jwt
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from itdesk.adapters.fake_provider import FakeIdentityProvider
from itdesk.infra.auth import decode_access_token
from itdesk.infra.events import EventBus
from itdesk.infra.token_store import MemoryTokenStore
from itdesk.services.api_client import ApiClient
from itdesk.services.session_manager import SessionManager

BACKEND_URL = "http://backend"
ADMIN_EMAIL = "admin@itdesk.test"
ADMIN_PASSWORD = "s3cret-pass"
ADMIN_ID = "user-admin"


async def _always_online() -> bool:
    return True


class FakeBackend:
    """Console API double: privileged ``/auth/login`` plus a few data routes."""

    def __init__(self) -> None:
        self.login_status = 200
        self.login_error = "Access denied"
        self.login_code: str | None = None
        self.login_gate: asyncio.Event | None = None
        self.login_started: asyncio.Event | None = None
        self.login_calls = 0
        self.revoked_tokens: set[str] = set()
        self.reject_all_tokens = False
        self.loans: dict[str, dict[str, Any]] = {}
        self.tickets: dict[str, dict[str, Any]] = {}
        self.users: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, str, dict[str, Any]]] = []
        self.app = self._build_app()

    def _authorized(self, request: Request) -> bool:
        header = request.headers.get("authorization", "")
        token = header.removeprefix("Bearer ").strip()
        if self.reject_all_tokens or not token or token in self.revoked_tokens:
            return False
        try:
            decode_access_token(token)
        except jwt.PyJWTError:
            return False
        return True

    def _build_app(self) -> FastAPI:
        app = FastAPI()

        @app.post("/auth/login")
        async def privileged_login(request: Request) -> JSONResponse:
            self.login_calls += 1
            if self.login_started is not None:
                self.login_started.set()
            if self.login_gate is not None:
                await self.login_gate.wait()
            body = await request.json()
            token = body.get("access_token") or ""
            if token in self.revoked_tokens:
                return JSONResponse({"error": "Invalid token"}, status_code=401)
            try:
                claims = decode_access_token(token)
            except jwt.PyJWTError:
                return JSONResponse({"error": "Invalid token"}, status_code=401)
            if self.login_status != 200:
                payload: dict[str, Any] = {"error": self.login_error}
                if self.login_code:
                    payload["code"] = self.login_code
                return JSONResponse(payload, status_code=self.login_status)
            user = {
                "id": claims["sub"],
                "email": claims["email"],
                "full_name": "Console Admin",
                "role_name": "admin",
                "role_id": 1,
            }
            return JSONResponse({"user": user})

        @app.get("/prestamos")
        async def list_loans(request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            items = list(self.loans.values())
            return JSONResponse({"data": items, "pagination": {"page": 1, "total": len(items)}})

        @app.get("/prestamos/{loan_id}")
        async def get_loan(loan_id: str, request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            if loan_id not in self.loans:
                return JSONResponse({"error": "Loan not found"}, status_code=404)
            return JSONResponse(self.loans[loan_id])

        @app.patch("/prestamos/{loan_id}")
        async def update_loan(loan_id: str, request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            changes = await request.json()
            self.writes.append(("PATCH", f"/prestamos/{loan_id}", changes))
            self.loans[loan_id] = {**self.loans[loan_id], **changes}
            return JSONResponse({"data": self.loans[loan_id]})

        @app.get("/tickets")
        async def list_tickets(request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            return JSONResponse(list(self.tickets.values()))

        @app.patch("/tickets/{ticket_id}")
        async def update_ticket(ticket_id: str, request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            changes = await request.json()
            self.writes.append(("PATCH", f"/tickets/{ticket_id}", changes))
            self.tickets[ticket_id] = {**self.tickets[ticket_id], **changes}
            return JSONResponse(self.tickets[ticket_id])

        @app.get("/users")
        async def list_users(request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            return JSONResponse(list(self.users.values()))

        @app.put("/users/{user_id}")
        async def update_user(user_id: str, request: Request) -> JSONResponse:
            if not self._authorized(request):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            changes = await request.json()
            self.writes.append(("PUT", f"/users/{user_id}", changes))
            current = self.users.get(user_id, {"id": user_id})
            self.users[user_id] = {**current, **{k: v for k, v in changes.items() if k != "password"}}
            return JSONResponse({"user": self.users[user_id]})

        return app

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.ASGITransport(app=self.app), base_url=BACKEND_URL)


class ConsoleHarness:
    """Session manager and API client wired against :class:`FakeBackend`."""

    def __init__(self, backend: FakeBackend, provider: FakeIdentityProvider, **session_kwargs: Any) -> None:
        self.backend = backend
        self.provider = provider
        self.bus = EventBus()
        self.store = MemoryTokenStore(session_kwargs.pop("cached_token", None))
        self.events: list[tuple[str, dict[str, Any]]] = []
        self.bus.subscribe("*", lambda event: self.events.append((event.event_type, event.payload)))
        self.http = backend.http_client()
        self.session = SessionManager(
            provider=provider,
            http_client=self.http,
            token_store=self.store,
            bus=self.bus,
            api_base_url=BACKEND_URL,
            anon_key="anon-key",
            online_check=_always_online,
            **session_kwargs,
        )
        self.api = ApiClient(
            self.session,
            http_client=self.http,
            base_url=BACKEND_URL,
            online_check=_always_online,
        )

    def event_types(self) -> list[str]:
        return [event_type for event_type, _ in self.events]

    async def login(self) -> None:
        await self.session.start()
        await self.session.login(ADMIN_EMAIL, ADMIN_PASSWORD)

    async def aclose(self) -> None:
        await self.session.close()
        await self.http.aclose()


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout=timeout)


HarnessFactory = Callable[..., ConsoleHarness]
Scenario = Callable[[ConsoleHarness], Awaitable[Any]]


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture()
def provider() -> FakeIdentityProvider:
    fake = FakeIdentityProvider()
    fake.add_account(ADMIN_EMAIL, ADMIN_PASSWORD, user_id=ADMIN_ID)
    return fake


@pytest.fixture()
def make_harness(backend: FakeBackend, provider: FakeIdentityProvider) -> HarnessFactory:
    def _make(**session_kwargs: Any) -> ConsoleHarness:
        return ConsoleHarness(backend, provider, **session_kwargs)

    return _make


@pytest.fixture()
def run_scenario(make_harness: HarnessFactory) -> Callable[..., Any]:
    """Run ``scenario(harness)`` on a fresh event loop and always tear down."""

    def _run(scenario: Scenario, **session_kwargs: Any) -> Any:
        async def _main() -> Any:
            harness = make_harness(**session_kwargs)
            try:
                return await scenario(harness)
            finally:
                await harness.aclose()

        return asyncio.run(_main())

    return _run


@pytest.fixture()
def poll() -> Callable[..., Awaitable[None]]:
    return wait_until
