from __future__ import annotations

import asyncio
import logging
from typing import Any

from itdesk.domain.errors import ConsoleError, NotAuthenticatedError
from itdesk.domain.models import EventEnvelope, FetchResult, RequestDescriptor
from itdesk.infra.events import EventBus
from itdesk.services.api_client import ApiClient

logger = logging.getLogger(__name__)


class ResourceFetch:
    """Keeps ``{data, loading, error}`` for one logical remote read.

    The read is identified by a :class:`RequestDescriptor`; changing it cancels
    the superseded fetch, re-setting the same one while it is in flight is a
    no-op. Session notifications clear data on logout and refetch on login.
    """

    def __init__(
        self,
        client: ApiClient,
        descriptor: RequestDescriptor | None = None,
        *,
        bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._bus = bus or client.session.bus
        self._descriptor = descriptor
        self._state = FetchResult()
        self._task: asyncio.Task[None] | None = None
        self._seq = 0
        self._closed = False
        self._bus.subscribe("session.signed_out", self._on_signed_out)
        self._bus.subscribe("session.authenticated", self._on_authenticated)
        if descriptor is not None:
            self._start()

    @property
    def state(self) -> FetchResult:
        return self._state

    @property
    def descriptor(self) -> RequestDescriptor | None:
        return self._descriptor

    @property
    def data(self) -> Any:
        return self._state.data

    @property
    def loading(self) -> bool:
        return self._state.loading

    @property
    def error(self) -> Exception | None:
        return self._state.error

    def set_descriptor(self, descriptor: RequestDescriptor) -> None:
        in_flight = self._task is not None and not self._task.done()
        if descriptor == self._descriptor and in_flight:
            return
        self._descriptor = descriptor
        self._start()

    async def refetch(self) -> FetchResult:
        self._start()
        await self.wait()
        return self._state

    async def wait(self) -> FetchResult:
        task = self._task
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return self._state

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._seq += 1
        self._bus.unsubscribe("session.signed_out", self._on_signed_out)
        self._bus.unsubscribe("session.authenticated", self._on_authenticated)

    def _start(self) -> None:
        if self._closed or self._descriptor is None:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._seq += 1
        if not self._client.session.is_authenticated:
            self._state = FetchResult(error=NotAuthenticatedError())
            self._task = None
            return
        self._state = FetchResult(data=self._state.data, loading=True)
        self._task = asyncio.create_task(self._run(self._seq, self._descriptor))

    async def _run(self, seq: int, descriptor: RequestDescriptor) -> None:
        try:
            data = await self._client.call(descriptor.path(), method=descriptor.method)
        except ConsoleError as exc:
            if seq == self._seq:
                logger.info("Fetch %s failed (%s)", descriptor.endpoint, exc.category)
                self._state = FetchResult(error=exc)
            return
        except Exception as exc:
            logger.exception("Fetch %s failed unexpectedly", descriptor.endpoint)
            if seq == self._seq:
                self._state = FetchResult(error=exc)
            return
        if seq == self._seq:
            self._state = FetchResult(data=data)

    def _on_signed_out(self, event: EventEnvelope) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._seq += 1
        self._state = FetchResult(error=NotAuthenticatedError())

    def _on_authenticated(self, event: EventEnvelope) -> None:
        self._start()
