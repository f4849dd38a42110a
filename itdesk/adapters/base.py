from __future__ import annotations

import asyncio
from typing import Protocol

from itdesk.domain.models import AuthEvent, ProviderSession


class IdentityProvider(Protocol):
    async def sign_in(self, email: str, password: str) -> ProviderSession: ...

    async def sign_out(self) -> None: ...

    async def get_session(self) -> ProviderSession | None: ...

    async def refresh_session(self) -> ProviderSession | None: ...

    def subscribe(self) -> asyncio.Queue[AuthEvent]: ...

    def unsubscribe(self, queue: asyncio.Queue[AuthEvent]) -> None: ...
