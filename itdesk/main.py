from __future__ import annotations

from types import TracebackType

import httpx

from itdesk.adapters.base import IdentityProvider
from itdesk.adapters.gotrue_provider import REFRESH_TOKEN_KEY, GoTrueIdentityProvider
from itdesk.infra.events import EventBus
from itdesk.infra.logging_setup import configure_logging
from itdesk.infra.token_store import RedisTokenStore, TokenStore, build_token_store, check_redis_ready
from itdesk.services.account_service import AccountService
from itdesk.services.api_client import HTTP_TIMEOUT_SECONDS, ApiClient
from itdesk.services.record_service import RecordService
from itdesk.services.session_manager import SessionManager


class Console:
    """Everything a console front end needs, started and stopped together."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        provider: IdentityProvider,
        token_store: TokenStore,
        bus: EventBus,
        session: SessionManager,
        api: ApiClient,
        records: RecordService,
        accounts: AccountService,
        owns_http: bool = True,
    ) -> None:
        self.http_client = http_client
        self.provider = provider
        self.token_store = token_store
        self.bus = bus
        self.session = session
        self.api = api
        self.records = records
        self.accounts = accounts
        self._owns_http = owns_http

    def readiness(self) -> dict[str, str]:
        status = {"session": self.session.state.value}
        if isinstance(self.token_store, RedisTokenStore):
            status["token_store"] = "ok" if check_redis_ready() else "unavailable"
        else:
            status["token_store"] = "ok"
        return status

    async def start(self) -> Console:
        await self.session.start()
        return self

    async def close(self) -> None:
        await self.session.close()
        aclose = getattr(self.provider, "aclose", None)
        if aclose is not None:
            await aclose()
        if self._owns_http:
            await self.http_client.aclose()

    async def __aenter__(self) -> Console:
        return await self.start()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


def build_console(
    *,
    provider: IdentityProvider | None = None,
    token_store: TokenStore | None = None,
    session_store: TokenStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    bus: EventBus | None = None,
    api_base_url: str | None = None,
    anon_key: str | None = None,
    liveness_interval_seconds: float | None = None,
    log_level: str | None = None,
) -> Console:
    if log_level is not None:
        configure_logging(log_level)
    owns_http = http_client is None
    http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(HTTP_TIMEOUT_SECONDS))
    selected_provider = provider or GoTrueIdentityProvider(
        anon_key=anon_key,
        http_client=http,
        session_store=session_store or build_token_store(key=REFRESH_TOKEN_KEY),
    )
    store = token_store or build_token_store()
    selected_bus = bus or EventBus()
    session = SessionManager(
        provider=selected_provider,
        http_client=http,
        token_store=store,
        bus=selected_bus,
        api_base_url=api_base_url,
        anon_key=anon_key,
        liveness_interval_seconds=liveness_interval_seconds,
    )
    api = ApiClient(session, http_client=http, base_url=api_base_url)
    return Console(
        http_client=http,
        provider=selected_provider,
        token_store=store,
        bus=selected_bus,
        session=session,
        api=api,
        records=RecordService(api),
        accounts=AccountService(api, session),
        owns_http=owns_http,
    )
