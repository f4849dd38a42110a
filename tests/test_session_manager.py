from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from conftest import ADMIN_EMAIL, ADMIN_ID, ADMIN_PASSWORD, ConsoleHarness, wait_until
from itdesk.domain.errors import (
    InactiveAccountError,
    InsufficientPrivilegeError,
    InvalidCredentialsError,
    LoginSupersededError,
    RateLimitedError,
    UnconfirmedAccountError,
    UnknownAccountError,
)
from itdesk.domain.state_machine import SessionState

Runner = Callable[..., Any]


def test_startup_without_provider_session_settles_unauthenticated(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        assert h.session.loading is True
        assert h.session.state == SessionState.RESOLVING
        snapshot = await h.session.start()
        assert snapshot.state == SessionState.UNAUTHENTICATED
        assert snapshot.loading is False
        assert h.session.user is None
        assert h.store.get() is None
        assert "session.resolved" in h.event_types()

    run_scenario(scenario, cached_token="stale-token")


def test_startup_with_provider_session_runs_privileged_check(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        restored = h.provider.start_session(ADMIN_EMAIL)
        await h.session.start()
        assert h.session.state == SessionState.AUTHENTICATED
        assert h.session.user is not None
        assert h.session.user.id == ADMIN_ID
        assert h.session.user.role == "admin"
        assert h.session.token == restored.access_token
        assert h.store.get() == restored.access_token
        assert h.backend.login_calls == 1
        assert h.session.loading is False

    run_scenario(scenario)


def test_startup_with_denied_session_terminates_provider_session(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.provider.start_session(ADMIN_EMAIL)
        h.backend.login_status = 403
        await h.session.start()
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.session.user is None
        assert h.provider.sign_out_calls == 1
        assert h.provider.current_session is None
        assert h.store.get() is None

    run_scenario(scenario, cached_token="stale-token")


def test_startup_provider_error_purges_cached_token(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.provider.fail_get_session = True
        await h.session.start()
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.store.get() is None
        assert h.session.loading is False

    run_scenario(scenario, cached_token="stale-token")


def test_login_success_populates_user_from_server(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.session.start()
        user = await h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert user.id == ADMIN_ID
        assert user.full_name == "Console Admin"
        assert h.session.state == SessionState.AUTHENTICATED
        assert h.session.token == h.provider.current_session.access_token  # type: ignore[union-attr]
        assert h.store.get() == h.session.token
        assert "session.authenticated" in h.event_types()

    run_scenario(scenario)


@pytest.mark.parametrize(
    ("setup", "expected"),
    [
        ({"password": "wrong"}, InvalidCredentialsError),
        ({"email": "ghost@itdesk.test"}, UnknownAccountError),
        ({"rate_limited": True}, RateLimitedError),
        ({"unconfirmed": True}, UnconfirmedAccountError),
    ],
)
def test_login_maps_provider_failures(run_scenario: Runner, setup: dict[str, Any], expected: type[Exception]) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        email = setup.get("email", ADMIN_EMAIL)
        if setup.get("rate_limited"):
            h.provider.rate_limited = True
        if setup.get("unconfirmed"):
            email = "new@itdesk.test"
            h.provider.add_account(email, ADMIN_PASSWORD, confirmed=False)
        await h.session.start()
        with pytest.raises(expected):
            await h.session.login(email, setup.get("password", ADMIN_PASSWORD))
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.backend.login_calls == 0

    run_scenario(scenario)


def test_login_with_insufficient_role_signs_out_of_provider(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.backend.login_status = 403
        await h.session.start()
        with pytest.raises(InsufficientPrivilegeError) as excinfo:
            await h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert excinfo.value.category == "INSUFFICIENT_PRIVILEGE"
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.session.user is None
        assert h.provider.sign_out_calls == 1
        assert h.provider.current_session is None

    run_scenario(scenario)


def test_login_with_inactive_account_is_distinguished(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.backend.login_status = 403
        h.backend.login_error = "Account is inactive"
        await h.session.start()
        with pytest.raises(InactiveAccountError):
            await h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        assert h.provider.sign_out_calls == 1

    run_scenario(scenario)


def test_signed_out_event_during_login_wins(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.backend.login_gate = asyncio.Event()
        h.backend.login_started = asyncio.Event()
        await h.session.start()

        login = asyncio.create_task(h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD))
        await asyncio.wait_for(h.backend.login_started.wait(), timeout=2.0)
        h.provider.revoke()
        await wait_until(lambda: ("session.signed_out", {"state": "UNAUTHENTICATED", "reason": "provider_signed_out"}) in h.events)
        h.backend.login_gate.set()

        with pytest.raises(LoginSupersededError):
            await login
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.session.user is None
        assert h.session.token is None
        assert h.store.get() is None

    run_scenario(scenario)


def test_explicit_logout_during_login_wins(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        h.backend.login_gate = asyncio.Event()
        h.backend.login_started = asyncio.Event()
        await h.session.start()

        login = asyncio.create_task(h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD))
        await asyncio.wait_for(h.backend.login_started.wait(), timeout=2.0)
        await h.session.logout()
        h.backend.login_gate.set()

        with pytest.raises(LoginSupersededError):
            await login
        assert h.session.user is None

    run_scenario(scenario)


def test_logout_clears_state_even_when_provider_sign_out_fails(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        h.provider.fail_sign_out = True
        await h.session.logout()
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.session.user is None
        assert h.session.token is None
        assert h.store.get() is None
        assert h.provider.sign_out_calls == 1

    run_scenario(scenario)


def test_login_after_logout_is_not_cancelled_by_stale_sign_out_event(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        await h.session.logout()
        user = await h.session.login(ADMIN_EMAIL, ADMIN_PASSWORD)
        await asyncio.sleep(0.01)
        assert h.session.user == user

    run_scenario(scenario)


def test_token_refresh_revalidates_and_keeps_user(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        old_token = h.session.token
        refreshed = h.provider.emit_refresh()
        assert refreshed is not None
        await wait_until(lambda: "session.revalidated" in h.event_types())
        assert h.session.user is not None
        assert h.session.token == refreshed.access_token != old_token
        assert h.store.get() == refreshed.access_token
        assert h.backend.login_calls == 2

    run_scenario(scenario)


def test_token_refresh_with_revoked_privilege_clears_user(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        h.backend.login_status = 401
        h.provider.emit_refresh()
        await wait_until(lambda: h.session.user is None)
        assert h.session.state == SessionState.UNAUTHENTICATED
        assert h.session.token is None
        assert h.store.get() is None
        reasons = [payload.get("reason") for kind, payload in h.events if kind == "session.signed_out"]
        assert "revoked" in reasons
        await wait_until(lambda: h.provider.sign_out_calls == 1)

    run_scenario(scenario)


def test_provider_signed_out_event_clears_user_and_token_together(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        observed: list[tuple[object, object]] = []
        h.bus.subscribe("session.signed_out", lambda event: observed.append((h.session.user, h.session.token)))
        h.provider.revoke()
        await wait_until(lambda: h.session.user is None)
        assert observed[0] == (None, None)
        assert h.store.get() is None

    run_scenario(scenario)


def test_liveness_check_catches_silent_expiry(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        assert h.session.liveness_running
        h.provider.expire_silently()
        await wait_until(lambda: h.session.user is None)
        reasons = [payload.get("reason") for kind, payload in h.events if kind == "session.signed_out"]
        assert reasons == ["liveness"]

    run_scenario(scenario, liveness_interval_seconds=0.02)


def test_check_liveness_reports_present_session(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        assert await h.session.check_liveness() is True
        h.provider.fail_get_session = True
        assert await h.session.check_liveness() is False
        assert h.session.user is None

    run_scenario(scenario)


def test_get_token_prefers_fresh_provider_read(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        old_token = h.session.get_token_sync()
        rotated = h.provider.rotate_silently()
        assert rotated is not None
        assert h.session.get_token_sync() == old_token

        token = await h.session.get_token()
        assert token == rotated.access_token
        assert h.session.get_token_sync() == rotated.access_token
        assert h.store.get() == rotated.access_token

    run_scenario(scenario)


def test_get_token_sync_reads_the_shared_cache(run_scenario: Runner) -> None:
    class BrokenStore:
        def get(self) -> str | None:
            raise ConnectionError("cache down")

    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        h.store.set("written-by-another-worker")
        assert h.session.get_token_sync() == "written-by-another-worker"

        h.session._store = BrokenStore()  # type: ignore[assignment]
        assert h.session.get_token_sync() == h.session.token

    run_scenario(scenario)


def test_get_token_without_provider_session_forces_logout(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        h.provider.expire_silently()
        assert await h.session.get_token() is None
        assert h.session.user is None

    run_scenario(scenario)


def test_refresh_token_rotates_cached_token(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        old_token = h.session.token
        token = await h.session.refresh_token()
        assert token is not None and token != old_token
        assert h.session.token == token
        assert h.provider.refresh_calls == 1

    run_scenario(scenario)


def test_schedule_forced_logout_runs_after_delay(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        task = h.session.schedule_forced_logout(0.01)
        assert h.session.user is not None
        await task
        assert h.session.user is None
        assert h.provider.sign_out_calls == 1

    run_scenario(scenario)


def test_close_is_idempotent_and_stops_timer_once(run_scenario: Runner) -> None:
    async def scenario(h: ConsoleHarness) -> None:
        await h.login()
        assert h.provider.subscriber_count == 1
        await h.session.close()
        await h.session.close()
        assert not h.session.liveness_running
        assert h.provider.subscriber_count == 0
        h.provider.revoke()
        await asyncio.sleep(0.01)
        assert h.session.user is not None

    run_scenario(scenario, liveness_interval_seconds=0.02)
