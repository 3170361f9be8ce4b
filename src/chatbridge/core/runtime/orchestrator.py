"""Supervises the set of active channel adapters."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Callable, Dict, Optional

from ...infra.config import BridgeSettings
from ..channel.errors import AuthError
from ..channel.models import ChannelConfig, ChannelType, ConnectionState, InboundMessage
from ..channel.protocol import ChannelAdapter
from ..channel.router import MessageRouter
from .backoff import Backoff
from .state_tracker import BridgeStateTracker

logger = logging.getLogger(__name__)

AdapterFactory = Callable[[ChannelType], ChannelAdapter]
KeepAliveCallback = Callable[[bool], None]


def _is_running(adapter: Optional[ChannelAdapter]) -> bool:
    if adapter is None:
        return False
    task = adapter.task
    return task is not None and not task.done()


class BridgeOrchestrator:
    """Starts, stops and supervises one adapter per enabled channel.

    Each channel has its own lock, so starting or stopping one channel never
    waits on another. The orchestrator is the only writer of the injected
    :class:`BridgeStateTracker`.
    """

    def __init__(
        self,
        settings: BridgeSettings,
        router: MessageRouter,
        tracker: BridgeStateTracker,
        adapter_factory: Optional[AdapterFactory] = None,
        on_keep_alive: Optional[KeepAliveCallback] = None,
        restart_backoff: Optional[Callable[[], Backoff]] = None,
    ):
        if adapter_factory is None:
            from ...channels import create_adapter
            adapter_factory = create_adapter
        self._settings = settings
        self._router = router
        self._tracker = tracker
        self._adapter_factory = adapter_factory
        self._on_keep_alive = on_keep_alive
        self._adapters: Dict[ChannelType, ChannelAdapter] = {}
        self._locks: Dict[ChannelType, asyncio.Lock] = {ct: asyncio.Lock() for ct in ChannelType}
        self._restart_tasks: Dict[ChannelType, asyncio.Task] = {}
        make_backoff = restart_backoff or Backoff
        self._restart_backoff: Dict[ChannelType, Backoff] = {ct: make_backoff() for ct in ChannelType}
        self._keep_alive = False
        router.attach(
            get_adapter=self.get_adapter,
            get_config=self.channel_config,
            on_accepted=self._on_accepted,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def settings(self) -> BridgeSettings:
        return self._settings

    @property
    def any_channel_enabled(self) -> bool:
        return self._settings.any_enabled

    def channel_config(self, channel_type: ChannelType) -> ChannelConfig:
        return self._settings.channel(channel_type)

    def get_adapter(self, channel_type: ChannelType) -> Optional[ChannelAdapter]:
        """Return the adapter for *channel_type* while it is running."""
        adapter = self._adapters.get(channel_type)
        return adapter if _is_running(adapter) else None

    # ------------------------------------------------------------------
    # Whole-bridge lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start every enabled channel."""
        enabled = self._settings.enabled_channels()
        logger.info("Starting bridge with channels: %s", ", ".join(ct.value for ct in enabled) or "none")
        await asyncio.gather(*(self.request_start(ct) for ct in enabled))
        self._refresh_service_state()

    async def stop(self) -> None:
        """Stop every channel and the router workers."""
        await asyncio.gather(*(self.request_stop(ct) for ct in list(self._adapters)))
        await self._router.close()
        self._refresh_service_state()
        logger.info("Bridge stopped")

    async def apply_settings(self, settings: BridgeSettings) -> None:
        """Reconcile running channels with a new configuration.

        Only channels whose configuration changed are touched.
        """
        previous, self._settings = self._settings, settings
        await asyncio.gather(*(
            self._reconcile(ct, previous.channel(ct), settings.channel(ct)) for ct in ChannelType
        ))
        self._refresh_service_state()

    async def _reconcile(self, channel_type: ChannelType, before: ChannelConfig, after: ChannelConfig) -> None:
        if not after.enabled:
            if channel_type in self._adapters:
                await self.request_stop(channel_type)
            return
        if channel_type not in self._adapters or not before.enabled:
            await self.request_start(channel_type)
        elif before != after:
            logger.info("Configuration of %s changed; restarting it", channel_type.value)
            await self.request_stop(channel_type)
            await self.request_start(channel_type)

    # ------------------------------------------------------------------
    # Per-channel transitions
    # ------------------------------------------------------------------

    async def request_start(self, channel_type: ChannelType) -> bool:
        """Start *channel_type*. Returns False if it was already running or failed."""
        async with self._locks[channel_type]:
            started = await self._start_locked(channel_type)
        self._refresh_service_state()
        return started

    async def request_stop(self, channel_type: ChannelType) -> None:
        """Stop *channel_type* and mark it STOPPED once the adapter confirms.

        An adapter whose transport would not stop reports ERROR instead, and
        that state is kept.
        """
        self._cancel_restart(channel_type)
        async with self._locks[channel_type]:
            adapter = self._adapters.get(channel_type)
            stuck = False
            if adapter is not None:
                await self._stop_adapter(channel_type, adapter)
                self._adapters.pop(channel_type, None)
                stuck = adapter.state is ConnectionState.ERROR
            if not stuck:
                self._tracker.update_channel(channel_type, ConnectionState.STOPPED)
        self._refresh_service_state()

    async def _start_locked(self, channel_type: ChannelType) -> bool:
        current = self._adapters.get(channel_type)
        if _is_running(current):
            logger.debug("Channel %s already running", channel_type.value)
            return False
        if current is not None:
            await self._stop_adapter(channel_type, current)

        adapter = self._adapter_factory(channel_type)
        adapter.add_state_listener(functools.partial(self._on_adapter_state, adapter))
        self._adapters[channel_type] = adapter
        try:
            await adapter.start(self._settings.channel(channel_type), self._router.on_inbound)
        except AuthError as exc:
            logger.error("Channel %s not started: %s", channel_type.value, exc)
            self._tracker.update_channel(channel_type, ConnectionState.ERROR, str(exc))
            return False
        except Exception as exc:
            logger.exception("Channel %s failed to start", channel_type.value)
            self._tracker.update_channel(channel_type, ConnectionState.ERROR, str(exc))
            return False

        task = adapter.task
        if task is not None:
            task.add_done_callback(functools.partial(self._on_adapter_exit, channel_type, adapter))
        logger.info("Channel %s started", channel_type.value)
        return True

    async def _stop_adapter(self, channel_type: ChannelType, adapter: ChannelAdapter) -> None:
        try:
            await adapter.stop()
        except Exception as exc:
            logger.warning("Channel %s stop error: %s", channel_type.value, exc)

    # ------------------------------------------------------------------
    # Supervision
    # ------------------------------------------------------------------

    def _on_adapter_state(
        self,
        adapter: ChannelAdapter,
        channel_type: ChannelType,
        state: ConnectionState,
        error: Optional[str],
    ) -> None:
        if self._adapters.get(channel_type) is not adapter:
            return
        if state is ConnectionState.CONNECTED:
            self._restart_backoff[channel_type].reset()
        self._tracker.update_channel(channel_type, state, error)

    def _on_adapter_exit(self, channel_type: ChannelType, adapter: ChannelAdapter, task: asyncio.Task) -> None:
        if task.cancelled() or self._adapters.get(channel_type) is not adapter:
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, AuthError):
            logger.error("Channel %s stopped on authentication failure: %s", channel_type.value, exc)
            self._tracker.update_channel(channel_type, ConnectionState.ERROR, str(exc))
            self._refresh_service_state()
            return

        logger.error("Channel %s crashed: %r", channel_type.value, exc, exc_info=exc)
        self._tracker.update_channel(channel_type, ConnectionState.ERROR, f"crashed: {exc}")
        self._refresh_service_state()
        if not self._settings.channel(channel_type).enabled:
            return
        delay = self._restart_backoff[channel_type].next_delay()
        logger.info("Restarting channel %s in %.1fs", channel_type.value, delay)
        self._cancel_restart(channel_type)
        self._restart_tasks[channel_type] = asyncio.create_task(
            self._restart_after(channel_type, adapter, delay),
            name=f"restart-{channel_type.value}",
        )

    async def _restart_after(self, channel_type: ChannelType, adapter: ChannelAdapter, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            async with self._locks[channel_type]:
                if self._adapters.get(channel_type) is not adapter:
                    return
                await self._start_locked(channel_type)
            self._refresh_service_state()
        finally:
            if self._restart_tasks.get(channel_type) is asyncio.current_task():
                self._restart_tasks.pop(channel_type, None)

    def _cancel_restart(self, channel_type: ChannelType) -> None:
        task = self._restart_tasks.pop(channel_type, None)
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Derived state
    # ------------------------------------------------------------------

    def _on_accepted(self, message: InboundMessage) -> None:
        self._tracker.record_message(message.channel_type)

    def _refresh_service_state(self) -> None:
        self._tracker.set_service_running(any(_is_running(a) for a in self._adapters.values()))
        enabled = self.any_channel_enabled
        if enabled == self._keep_alive:
            return
        self._keep_alive = enabled
        logger.info("Keep-alive %s", "requested" if enabled else "released")
        if self._on_keep_alive is not None:
            try:
                self._on_keep_alive(enabled)
            except Exception as exc:
                logger.warning("Keep-alive callback failed: %s", exc)
