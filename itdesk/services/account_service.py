from __future__ import annotations

import logging
from typing import Any

from itdesk.domain.account_rules import critical_changes, requires_forced_logout, would_lock_out_self
from itdesk.domain.errors import SelfLockoutError, ServerError
from itdesk.domain.models import AccountRecord, UserUpdate, UserUpdateOutcome
from itdesk.services.api_client import ApiClient
from itdesk.services.session_manager import FORCED_LOGOUT_DELAY_SECONDS, SessionManager

logger = logging.getLogger(__name__)

USERS_ENDPOINT = "/users"


class AccountService:
    def __init__(
        self,
        client: ApiClient,
        session: SessionManager,
        *,
        forced_logout_delay_seconds: float | None = None,
    ) -> None:
        self._client = client
        self._session = session
        delay = FORCED_LOGOUT_DELAY_SECONDS if forced_logout_delay_seconds is None else forced_logout_delay_seconds
        self._forced_logout_delay_seconds = max(delay, 0.0)

    async def list_users(self) -> list[AccountRecord]:
        body = await self._client.call(USERS_ENDPOINT)
        if isinstance(body, dict):
            body = body.get("data", [])
        if not isinstance(body, list):
            raise ServerError(200, "unexpected users payload")
        return [AccountRecord.model_validate(item) for item in body if isinstance(item, dict)]

    async def update_user(self, target: AccountRecord, changes: UserUpdate) -> UserUpdateOutcome:
        current = self._session.user
        current_id = current.id if current else None
        if would_lock_out_self(current_id, target, changes):
            raise SelfLockoutError()

        payload: dict[str, Any] = changes.model_dump(exclude_none=True)
        if not payload.get("password"):
            payload.pop("password", None)
        body = await self._client.call(f"{USERS_ENDPOINT}/{target.id}", method="PUT", body=payload)
        updated = body.get("user", body) if isinstance(body, dict) else {}

        if not requires_forced_logout(current_id, target, changes):
            return UserUpdateOutcome(user=updated, forced_logout=False)

        logger.info(
            "Own account changed (%s); signing out in %.1fs",
            ", ".join(critical_changes(target, changes)),
            self._forced_logout_delay_seconds,
        )
        self._session.schedule_forced_logout(self._forced_logout_delay_seconds)
        return UserUpdateOutcome(user=updated, forced_logout=True)
