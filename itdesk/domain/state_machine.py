from __future__ import annotations

from enum import StrEnum


class SessionState(StrEnum):
    RESOLVING = "RESOLVING"
    AUTHENTICATED = "AUTHENTICATED"
    UNAUTHENTICATED = "UNAUTHENTICATED"


ALLOWED_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.RESOLVING: {SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED},
    SessionState.UNAUTHENTICATED: {SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED},
    SessionState.AUTHENTICATED: {SessionState.AUTHENTICATED, SessionState.UNAUTHENTICATED},
}


def can_transition(source: SessionState, target: SessionState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())
