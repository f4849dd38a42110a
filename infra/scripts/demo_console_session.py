from __future__ import annotations

import asyncio
import os

from itdesk.domain.status import summarize_loans
from itdesk.main import build_console


async def _run() -> None:
    email = os.getenv("ITDESK_DEMO_EMAIL", "")
    password = os.getenv("ITDESK_DEMO_PASSWORD", "")
    if not email or not password:
        raise RuntimeError("set ITDESK_DEMO_EMAIL and ITDESK_DEMO_PASSWORD")

    async with build_console(log_level=os.getenv("ITDESK_LOG_LEVEL", "INFO")) as console:
        user = await console.session.login(email, password)
        print(f"demo_console_session: signed in as {user.email} ({user.role})")

        loans = await console.records.list_loans()
        summary = summarize_loans([view.record for view in loans])
        print(f"demo_console_session: loans {summary}")

        tickets = await console.records.list_tickets()
        for view in tickets[:5]:
            print(f"  ticket {view.record.id}: {view.label}")

        await console.session.logout()
        if console.session.user is not None:
            raise RuntimeError("session still authenticated after logout")

    print("demo_console_session: flow ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
