"""Derived display status for loan and ticket records.

Every screen that shows a record's status goes through :func:`derive_status`
so list, detail and edit views agree. The result is recomputed on each call
and never written back.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from itdesk.domain.models import LoanRecord, RecordKind, TicketRecord, now_utc


class DerivedStatus(StrEnum):
    RETURNED = "returned"
    OVERDUE = "overdue"
    ACTIVE = "active"
    PENDING = "pending"


TERMINAL_STATUSES: dict[RecordKind, frozenset[str]] = {
    RecordKind.LOAN: frozenset({"returned"}),
    RecordKind.TICKET: frozenset({"resolved", "closed", "resuelto", "cerrado"}),
}

DEFAULT_STATUSES: dict[RecordKind, DerivedStatus] = {
    RecordKind.LOAN: DerivedStatus.ACTIVE,
    RecordKind.TICKET: DerivedStatus.PENDING,
}

SELECTABLE_STATUSES: dict[RecordKind, tuple[str, ...]] = {
    RecordKind.LOAN: ("active", "pending", "returned"),
    RecordKind.TICKET: ("open", "in_progress", "pending", "resolved", "closed"),
}

STATUS_LABELS: dict[RecordKind, dict[str, str]] = {
    RecordKind.LOAN: {
        "returned": "Returned",
        "overdue": "Overdue",
        "active": "Active",
        "pending": "Pending",
    },
    RecordKind.TICKET: {
        "returned": "Resolved",
        "overdue": "Overdue",
        "open": "Open",
        "abierto": "Open",
        "in_progress": "In progress",
        "en_progreso": "In progress",
        "pending": "Pending",
        "pendiente": "Pending",
        "resolved": "Resolved",
        "closed": "Closed",
    },
}

Record = LoanRecord | TicketRecord | Mapping[str, Any]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _normalize(value: str | None) -> str:
    return (value or "").strip().lower()


def coerce_record(record: Record, kind: RecordKind | None = None) -> LoanRecord | TicketRecord:
    if isinstance(record, LoanRecord | TicketRecord):
        return record
    if kind == RecordKind.TICKET:
        return TicketRecord.model_validate(dict(record))
    return LoanRecord.model_validate(dict(record))


def record_kind(record: LoanRecord | TicketRecord) -> RecordKind:
    return RecordKind.TICKET if isinstance(record, TicketRecord) else RecordKind.LOAN


def _completion_dates(record: LoanRecord | TicketRecord) -> tuple[datetime | None, datetime | None]:
    if isinstance(record, TicketRecord):
        return _as_utc(record.due_date), _as_utc(record.resolved_at)
    return _as_utc(record.expected_checkin_date), _as_utc(record.actual_checkin_date)


def derive_status(
    record: Record,
    *,
    kind: RecordKind | None = None,
    now: datetime | None = None,
) -> str:
    """Return the display status of ``record`` at ``now``.

    Precedence: explicit terminal label, then an actual completion date, then
    an expected completion date strictly in the past (``overdue``), then the
    stored label, then the per-kind default when nothing is stored.
    """
    parsed = coerce_record(record, kind)
    resolved_kind = record_kind(parsed)
    stored = _normalize(parsed.status)

    if stored in TERMINAL_STATUSES[resolved_kind]:
        return DerivedStatus.RETURNED
    expected, actual = _completion_dates(parsed)
    if actual is not None:
        return DerivedStatus.RETURNED
    current = _as_utc(now) or now_utc()
    if expected is not None and expected < current:
        return DerivedStatus.OVERDUE
    if not stored:
        return DEFAULT_STATUSES[resolved_kind]
    return stored


def derive_loan_status(record: LoanRecord | Mapping[str, Any], *, now: datetime | None = None) -> str:
    return derive_status(record, kind=RecordKind.LOAN, now=now)


def derive_ticket_status(record: TicketRecord | Mapping[str, Any], *, now: datetime | None = None) -> str:
    return derive_status(record, kind=RecordKind.TICKET, now=now)


def selectable_statuses(kind: RecordKind) -> tuple[str, ...]:
    return SELECTABLE_STATUSES[kind]


def is_selectable(kind: RecordKind, value: str | None) -> bool:
    return _normalize(value) in SELECTABLE_STATUSES[kind]


def status_label(kind: RecordKind, status: str | None) -> str:
    normalized = _normalize(status)
    if not normalized:
        return "No status"
    return STATUS_LABELS[kind].get(normalized, status or normalized)


def summarize_loans(records: list[LoanRecord | Mapping[str, Any]], *, now: datetime | None = None) -> dict[str, int]:
    current = _as_utc(now) or now_utc()
    summary = {"active": 0, "overdue": 0, "returned_today": 0}
    for item in records:
        loan = coerce_record(item, RecordKind.LOAN)
        status = derive_status(loan, now=current)
        if status == DerivedStatus.ACTIVE:
            summary["active"] += 1
        elif status == DerivedStatus.OVERDUE:
            summary["overdue"] += 1
        returned_at = _as_utc(loan.actual_checkin_date) if isinstance(loan, LoanRecord) else None
        if returned_at is not None and returned_at.date() == current.date():
            summary["returned_today"] += 1
    return summary


def summarize_tickets(records: list[TicketRecord | Mapping[str, Any]]) -> dict[str, int]:
    summary = {"open": 0, "in_progress": 0, "resolved": 0}
    for item in records:
        stored = _normalize(coerce_record(item, RecordKind.TICKET).status)
        if stored in {"open", "abierto"}:
            summary["open"] += 1
        elif stored in {"in_progress", "en_progreso", "en progreso"}:
            summary["in_progress"] += 1
        elif stored in TERMINAL_STATUSES[RecordKind.TICKET]:
            summary["resolved"] += 1
    return summary
