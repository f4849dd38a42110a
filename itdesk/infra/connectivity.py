from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable

from itdesk.domain.errors import NetworkError, OfflineError

logger = logging.getLogger(__name__)

CONNECTIVITY_PROBE = os.getenv("ITDESK_CONNECTIVITY_PROBE", "1.1.1.1:53")
CONNECTIVITY_TIMEOUT_SECONDS = float(os.getenv("ITDESK_CONNECTIVITY_TIMEOUT_SECONDS", "1.5"))

OnlineCheck = Callable[[], Awaitable[bool]]


def _split_probe(probe: str) -> tuple[str, int]:
    host, _, port = probe.rpartition(":")
    if not host:
        return probe, 53
    return host, int(port)


async def is_online(probe: str | None = None, timeout_seconds: float | None = None) -> bool:
    """Best-effort check that the host has any outbound connectivity."""
    host, port = _split_probe(probe or CONNECTIVITY_PROBE)
    try:
        _, writer = await asyncio.wait_for(
            asyncio.open_connection(host, port),
            timeout=timeout_seconds or CONNECTIVITY_TIMEOUT_SECONDS,
        )
    except (OSError, TimeoutError):
        logger.debug("Connectivity probe %s:%s failed", host, port)
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True


async def classify_transport_error(
    endpoint: str,
    method: str,
    exc: BaseException,
    online_check: OnlineCheck | None = None,
) -> NetworkError:
    check = online_check or is_online
    try:
        online = await check()
    except Exception:
        logger.debug("Online check raised; assuming online", exc_info=True)
        online = True
    detail = f"{method} {endpoint}: {type(exc).__name__}"
    if not online:
        return OfflineError(endpoint, method, detail)
    return NetworkError(endpoint, method, detail)
