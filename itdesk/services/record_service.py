from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from itdesk.domain.errors import ServerError
from itdesk.domain.models import LoanRecord, RecordKind, RecordView, RequestDescriptor, TicketRecord, now_utc
from itdesk.domain.status import DerivedStatus, coerce_record, derive_status, status_label
from itdesk.services.api_client import ApiClient

logger = logging.getLogger(__name__)

LOANS_ENDPOINT = "/prestamos"
TICKETS_ENDPOINT = "/tickets"


def to_view(record: LoanRecord | TicketRecord | dict[str, Any], kind: RecordKind, *, now: datetime | None = None) -> RecordView:
    parsed = coerce_record(record, kind)
    status = derive_status(parsed, now=now)
    return RecordView(record=parsed, status=status, label=status_label(kind, status))


def _items(body: Any) -> list[dict[str, Any]]:
    if isinstance(body, dict):
        body = body.get("data", [])
    if not isinstance(body, list):
        raise ServerError(200, "unexpected list payload")
    return [item for item in body if isinstance(item, dict)]


def _single(body: Any) -> dict[str, Any]:
    if isinstance(body, dict) and isinstance(body.get("data"), dict):
        return body["data"]
    if not isinstance(body, dict):
        raise ServerError(200, "unexpected record payload")
    return body


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def prepare_changes(kind: RecordKind, changes: dict[str, Any]) -> dict[str, Any]:
    """Normalize a write payload before it leaves the console.

    The console never writes ``overdue``; the field is dropped so the dates
    decide it. A loan with an actual check-in date is always written as
    returned.
    """
    payload = {key: _serialize(value) for key, value in changes.items()}
    status = payload.get("status")
    if isinstance(status, str) and status.strip().lower() == DerivedStatus.OVERDUE:
        logger.info("Dropping derived status 'overdue' from %s update", kind)
        payload.pop("status")
    if kind == RecordKind.LOAN and payload.get("actual_checkin_date"):
        payload["status"] = DerivedStatus.RETURNED.value
    return payload


class RecordService:
    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def list_loans(self, *, now: datetime | None = None, **params: Any) -> list[RecordView]:
        descriptor = RequestDescriptor.get(LOANS_ENDPOINT, **params)
        body = await self._client.call(descriptor.path())
        return [to_view(item, RecordKind.LOAN, now=now) for item in _items(body)]

    async def get_loan(self, loan_id: int | str, *, now: datetime | None = None) -> RecordView:
        body = await self._client.call(f"{LOANS_ENDPOINT}/{loan_id}")
        return to_view(_single(body), RecordKind.LOAN, now=now)

    async def update_loan(
        self,
        loan_id: int | str,
        changes: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> RecordView:
        payload = prepare_changes(RecordKind.LOAN, changes)
        body = await self._client.call(f"{LOANS_ENDPOINT}/{loan_id}", method="PATCH", body=payload)
        return to_view(_single(body), RecordKind.LOAN, now=now)

    async def process_return(
        self,
        loan_id: int | str,
        *,
        now: datetime | None = None,
        notes: str | None = None,
    ) -> RecordView:
        returned_at = now or now_utc()
        changes: dict[str, Any] = {"actual_checkin_date": returned_at, "status": DerivedStatus.RETURNED.value}
        if notes:
            changes["notes"] = notes
        return await self.update_loan(loan_id, changes, now=returned_at)

    async def list_tickets(self, *, now: datetime | None = None, **params: Any) -> list[RecordView]:
        descriptor = RequestDescriptor.get(TICKETS_ENDPOINT, **params)
        body = await self._client.call(descriptor.path())
        return [to_view(item, RecordKind.TICKET, now=now) for item in _items(body)]

    async def get_ticket(self, ticket_id: int | str, *, now: datetime | None = None) -> RecordView:
        # The tickets API only exposes the collection; pick the row out of it.
        body = await self._client.call(TICKETS_ENDPOINT)
        for item in _items(body):
            if str(item.get("id")) == str(ticket_id):
                return to_view(item, RecordKind.TICKET, now=now)
        raise ServerError(404, "Ticket not found")

    async def update_ticket(
        self,
        ticket_id: int | str,
        changes: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> RecordView:
        payload = prepare_changes(RecordKind.TICKET, changes)
        body = await self._client.call(f"{TICKETS_ENDPOINT}/{ticket_id}", method="PATCH", body=payload)
        return to_view(_single(body), RecordKind.TICKET, now=now)
