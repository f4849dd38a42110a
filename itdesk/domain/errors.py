from __future__ import annotations

from enum import StrEnum
from typing import Any, ClassVar


class ErrorCategory(StrEnum):
    NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
    NO_TOKEN = "NO_TOKEN"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SERVER_ERROR = "SERVER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    OFFLINE = "OFFLINE"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    UNCONFIRMED_ACCOUNT = "UNCONFIRMED_ACCOUNT"
    UNKNOWN_ACCOUNT = "UNKNOWN_ACCOUNT"
    RATE_LIMITED = "RATE_LIMITED"
    INSUFFICIENT_PRIVILEGE = "INSUFFICIENT_PRIVILEGE"
    INACTIVE_ACCOUNT = "INACTIVE_ACCOUNT"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    LOGIN_SUPERSEDED = "LOGIN_SUPERSEDED"
    SELF_LOCKOUT = "SELF_LOCKOUT"


USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.NOT_AUTHENTICATED: "You are not signed in.",
    ErrorCategory.NO_TOKEN: "Your session could not be read. Please sign in again.",
    ErrorCategory.SESSION_EXPIRED: "Your session has expired. Please sign in again.",
    ErrorCategory.SERVER_ERROR: "The server could not complete the request.",
    ErrorCategory.NETWORK_ERROR: "Could not reach the server. Check that it is running and try again.",
    ErrorCategory.OFFLINE: "No internet connection. Check your network.",
    ErrorCategory.INVALID_CREDENTIALS: "Incorrect email or password.",
    ErrorCategory.UNCONFIRMED_ACCOUNT: "Email not confirmed. Ask an administrator to activate your account.",
    ErrorCategory.UNKNOWN_ACCOUNT: "This email is not registered.",
    ErrorCategory.RATE_LIMITED: "Too many sign-in attempts. Wait a few minutes and try again.",
    ErrorCategory.INSUFFICIENT_PRIVILEGE: "Access denied. Only administrators can use the console.",
    ErrorCategory.INACTIVE_ACCOUNT: "This account is disabled.",
    ErrorCategory.AUTHENTICATION_FAILED: "Sign-in failed.",
    ErrorCategory.LOGIN_SUPERSEDED: "The session ended while signing in. Please try again.",
    ErrorCategory.SELF_LOCKOUT: "You cannot deactivate your own account.",
}


class ConsoleError(Exception):
    category: ClassVar[ErrorCategory]

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail
        super().__init__(detail or self.user_message)

    @property
    def user_message(self) -> str:
        return USER_MESSAGES[self.category]


class ApiError(ConsoleError):
    pass


class NotAuthenticatedError(ApiError):
    category = ErrorCategory.NOT_AUTHENTICATED


class NoTokenError(ApiError):
    category = ErrorCategory.NO_TOKEN


class SessionExpiredError(ApiError):
    category = ErrorCategory.SESSION_EXPIRED


class ServerError(ApiError):
    category = ErrorCategory.SERVER_ERROR

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"{status}: {message}")


class NetworkError(ApiError):
    category = ErrorCategory.NETWORK_ERROR

    def __init__(self, endpoint: str, method: str, detail: str | None = None) -> None:
        self.endpoint = endpoint
        self.method = method
        super().__init__(detail or f"{method} {endpoint} failed without a response")


class OfflineError(NetworkError):
    category = ErrorCategory.OFFLINE


class LoginError(ConsoleError):
    pass


class InvalidCredentialsError(LoginError):
    category = ErrorCategory.INVALID_CREDENTIALS


class UnconfirmedAccountError(LoginError):
    category = ErrorCategory.UNCONFIRMED_ACCOUNT


class UnknownAccountError(LoginError):
    category = ErrorCategory.UNKNOWN_ACCOUNT


class RateLimitedError(LoginError):
    category = ErrorCategory.RATE_LIMITED


class InsufficientPrivilegeError(LoginError):
    category = ErrorCategory.INSUFFICIENT_PRIVILEGE


class InactiveAccountError(LoginError):
    category = ErrorCategory.INACTIVE_ACCOUNT


class AuthenticationFailedError(LoginError):
    category = ErrorCategory.AUTHENTICATION_FAILED


class LoginSupersededError(LoginError):
    category = ErrorCategory.LOGIN_SUPERSEDED


class SelfLockoutError(ConsoleError):
    category = ErrorCategory.SELF_LOCKOUT


class SessionTransitionError(RuntimeError):
    pass


class ProviderAuthError(Exception):
    """Raw failure reported by the identity provider on sign-in."""

    def __init__(self, message: str, *, code: str | None = None, status: int | None = None) -> None:
        self.code = code
        self.status = status
        super().__init__(message)


_PROVIDER_CODES: dict[str, type[LoginError]] = {
    "invalid_credentials": InvalidCredentialsError,
    "invalid_grant": InvalidCredentialsError,
    "email_not_confirmed": UnconfirmedAccountError,
    "user_not_found": UnknownAccountError,
    "over_request_rate_limit": RateLimitedError,
    "over_email_send_rate_limit": RateLimitedError,
}

_PROVIDER_MESSAGES: tuple[tuple[str, type[LoginError]], ...] = (
    ("invalid login credentials", InvalidCredentialsError),
    ("email not confirmed", UnconfirmedAccountError),
    ("user not found", UnknownAccountError),
    ("too many requests", RateLimitedError),
    ("rate limit exceeded", RateLimitedError),
)


def classify_provider_error(exc: ProviderAuthError) -> LoginError:
    error_cls = _PROVIDER_CODES.get((exc.code or "").lower())
    if error_cls is None:
        text = str(exc).lower()
        for needle, candidate in _PROVIDER_MESSAGES:
            if needle in text:
                error_cls = candidate
                break
    if error_cls is None and exc.status == 429:
        error_cls = RateLimitedError
    return (error_cls or AuthenticationFailedError)(str(exc))


def classify_privilege_denial(status: int, body: dict[str, Any]) -> ConsoleError:
    """Map a failed ``/auth/login`` response to an error category."""
    message = str(body.get("error") or "")
    if status == 401:
        return SessionExpiredError(message or "access token rejected")
    if status == 403:
        code = str(body.get("code") or "").lower()
        if code == "inactive_account" or "inactiv" in message.lower():
            return InactiveAccountError(message or None)
        return InsufficientPrivilegeError(message or None)
    return ServerError(status, message or "privileged check failed")
