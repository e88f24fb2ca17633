from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from .broadcaster import BroadcastEvent, EventBroadcaster, Subscription
from .config import ReconcilerPolicy
from .domain import ConnectionStatus
from .errors import ProviderUnavailableError, WhatsAppError
from .observability import LogContext, Observability


class StatusReconciler:
    """Polling fallback for one connection while someone is watching its QR code.

    Push events (webhooks relayed through the broadcaster) are unreliable, so
    the reconciler polls the provider status on a fixed interval and, when no
    QR showed up within the fallback timeout, keeps re-requesting one on a
    slower interval. It has no overall deadline: it runs until the connection
    reports ``connected`` or the watcher detaches.
    """

    def __init__(
        self,
        manager: Any,
        *,
        connection_id: str,
        instance_name: str,
        broadcaster: EventBroadcaster,
        obs: Observability,
        policy: Optional[ReconcilerPolicy] = None,
        on_connected: Optional[Callable[[], None]] = None,
    ):
        self._manager = manager
        self._connection_id = connection_id
        self._instance_name = instance_name
        self._broadcaster = broadcaster
        self._obs = obs
        self._policy = policy or ReconcilerPolicy()
        self._on_connected = on_connected
        self._log_ctx = LogContext(instance_name=instance_name, connection_id=connection_id)

        self._sub: Optional[Subscription] = None
        self._tasks: list[asyncio.Task] = []
        self._qr_seen = asyncio.Event()
        self._connected = asyncio.Event()
        self._detached = False
        self.fallback_requests = 0
        self.polls = 0

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def qr_seen(self) -> bool:
        return self._qr_seen.is_set()

    async def attach(self) -> Subscription:
        if self._sub is not None:
            return self._sub
        self._sub = self._broadcaster.register(self._instance_name)
        self._obs.info("reconciler.attached", ctx=self._log_ctx)

        # timers run from attach, not from when the initial request returns
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        self._tasks.append(asyncio.create_task(self._fallback_loop()))
        await self._request_qr(initial=True)
        return self._sub

    def detach(self) -> None:
        """Cancel every timer now; in-flight requests are not awaited."""
        if self._detached:
            return
        self._detached = True
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()
        if self._sub is not None:
            self._broadcaster.unregister(self._sub)
        self._obs.info("reconciler.detached", ctx=self._log_ctx, connected=self.connected)

    async def wait_connected(self, timeout: Optional[float] = None) -> bool:
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def next_event(self, timeout: Optional[float] = None) -> Optional[BroadcastEvent]:
        """Next event for the watcher; pushed events also feed the reconciler's own view."""
        if self._sub is None:
            return None
        event = await self._sub.get(timeout=timeout)
        if event is not None:
            self.observe(event)
        return event

    def observe(self, event: BroadcastEvent) -> None:
        if event.event == "qrcode" and (event.data.get("code") or event.data.get("pairingCode")):
            self._qr_seen.set()
        elif event.event == "state":
            status = str(event.data.get("status") or "").lower()
            state = str(event.data.get("state") or "").lower()
            if status == ConnectionStatus.CONNECTED.value or state == "open":
                self._mark_connected()

    def _mark_connected(self) -> None:
        if self._connected.is_set():
            return
        self._connected.set()
        self._obs.info("reconciler.connected", ctx=self._log_ctx, polls=self.polls)
        if self._on_connected is not None:
            self._on_connected()
        self.detach()

    async def _request_qr(self, *, initial: bool = False) -> None:
        try:
            result = await self._manager.get_qr_code(self._connection_id)
        except WhatsAppError as e:
            self._obs.warning("reconciler.qr_request_failed", ctx=self._log_ctx, code=e.code, initial=initial)
            return
        if result.get("qr_code") or result.get("pairing_code"):
            self._qr_seen.set()
        if result.get("status") == ConnectionStatus.CONNECTED.value:
            self._mark_connected()

    async def _poll_loop(self) -> None:
        while not self._connected.is_set():
            await asyncio.sleep(self._policy.poll_interval_s)
            self.polls += 1
            try:
                conn = await self._manager.refresh_status(self._connection_id)
            except ProviderUnavailableError as e:
                self._obs.warning("reconciler.poll.provider_unavailable", ctx=self._log_ctx, error=str(e))
                continue
            except WhatsAppError as e:
                self._obs.warning("reconciler.poll.failed", ctx=self._log_ctx, code=e.code)
                continue
            if self._detached:
                return
            if conn.status == ConnectionStatus.CONNECTED:
                self._mark_connected()
                return

    async def _fallback_loop(self) -> None:
        try:
            await asyncio.wait_for(self._qr_seen.wait(), timeout=self._policy.qr_fallback_timeout_s)
            return
        except asyncio.TimeoutError:
            pass
        self._obs.info("reconciler.qr_fallback.started", ctx=self._log_ctx)
        while not self._connected.is_set():
            self.fallback_requests += 1
            await self._request_qr()
            if self._detached:
                return
            await asyncio.sleep(self._policy.qr_fallback_interval_s)
