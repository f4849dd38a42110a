from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from urllib.parse import urlencode
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict
from pydantic import Field as PydanticField

from itdesk.domain.state_machine import SessionState


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class SessionUser(BaseModel):
    """User profile as returned by the privileged ``/auth/login`` check."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str
    email: str
    full_name: str = ""
    role: str | None = PydanticField(default=None, validation_alias=AliasChoices("role", "role_name"))
    role_id: int | None = None


class ProviderSession(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    user_id: str | None = None
    email: str | None = None

    def expires_within(self, seconds: float, *, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        current = now or now_utc()
        return (self.expires_at - current).total_seconds() <= seconds


class AuthEventType(StrEnum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"


class AuthEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: AuthEventType
    session: ProviderSession | None = None
    ts: datetime = PydanticField(default_factory=now_utc)


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: SessionState
    user: SessionUser | None = None
    token: str | None = None
    loading: bool = False

    @property
    def is_authenticated(self) -> bool:
        return self.user is not None


class RecordKind(StrEnum):
    LOAN = "loan"
    TICKET = "ticket"


class LoanRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | str
    asset_id: int | str | None = None
    user_id: str | None = None
    status: str | None = None
    checkout_date: datetime | None = None
    expected_checkin_date: datetime | None = None
    actual_checkin_date: datetime | None = None
    notes: str | None = None


class TicketRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: int | str
    title: str | None = None
    status: str | None = None
    priority: str | None = None
    due_date: datetime | None = None
    resolved_at: datetime | None = None


class RecordView(BaseModel):
    record: LoanRecord | TicketRecord
    status: str
    label: str


class RequestDescriptor(BaseModel):
    """Stable identity of one logical remote read."""

    model_config = ConfigDict(frozen=True)

    endpoint: str
    method: str = "GET"
    params: tuple[tuple[str, str], ...] = ()

    @classmethod
    def get(cls, endpoint: str, **params: Any) -> RequestDescriptor:
        items = tuple(sorted((key, str(value)) for key, value in params.items() if value is not None))
        return cls(endpoint=endpoint, params=items)

    def path(self) -> str:
        if not self.params:
            return self.endpoint
        query = urlencode(self.params)
        separator = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{separator}{query}"


class FetchResult(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    data: Any = None
    loading: bool = False
    error: Exception | None = None


class AccountRecord(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    email: str
    full_name: str = ""
    role_id: int | None = None
    active: bool = True


class UserUpdate(BaseModel):
    email: str | None = None
    full_name: str | None = None
    role_id: int | None = None
    active: bool | None = None
    password: str | None = None


class UserUpdateOutcome(BaseModel):
    user: dict[str, Any]
    forced_logout: bool = False
