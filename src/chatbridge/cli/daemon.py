"""
chatbridge 守护进程
"""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from datetime import datetime
from typing import Any, Dict, Optional

from ..agent.engine import AgentEngine, EchoAgentEngine
from ..channels import create_adapter
from ..core.channel.conversation_mapper import ConversationMapper
from ..core.channel.router import MessageRouter
from ..core.runtime.orchestrator import BridgeOrchestrator
from ..core.runtime.state_tracker import BridgeStateTracker
from ..infra.config import build_bridge_settings, load_config
from ..infra.credentials import ConfigCredentialStore
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from ..infra.process import DaemonLock
from ..infra.user_data import UserDataManager

logger = logging.getLogger(__name__)


class BridgeDaemon:
    """
    chatbridge 守护进程

    Hosts the bridge: wires tracker, mapper, router and orchestrator, keeps
    the process alive while any channel is enabled and mirrors bridge status
    to a snapshot file for ``chatbridge status``.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        user_data: Optional[UserDataManager] = None,
        engine: Optional[AgentEngine] = None,
    ):
        self.config_path = config_path
        self.config = load_config(config_path)
        self.user_data = user_data or UserDataManager()
        self.tracker = BridgeStateTracker()
        self.mapper: Optional[ConversationMapper] = None
        self.router: Optional[MessageRouter] = None
        self.orchestrator: Optional[BridgeOrchestrator] = None
        self._engine = engine
        self._stop_event: Optional[asyncio.Event] = None
        self._started_at = datetime.now().isoformat()
        self._pid: Optional[int] = None
        self._running = False

    # -- wiring -------------------------------------------------------------

    def _build(self) -> None:
        self.user_data.ensure_directories()
        state_store = JsonStateStore(self.user_data.channel_state_file)
        self.mapper = ConversationMapper(self.user_data.conversation_links_file)

        engine = self._engine or EchoAgentEngine()
        self.router = MessageRouter(self.mapper, engine, state_store=state_store)
        if isinstance(engine, EchoAgentEngine):
            engine.bind(self.router.on_agent_reply)

        media_store = MediaStore(self.user_data.media_dir)
        settings = build_bridge_settings(self.config, ConfigCredentialStore(self.config))
        self.orchestrator = BridgeOrchestrator(
            settings,
            self.router,
            self.tracker,
            adapter_factory=lambda ct: create_adapter(ct, state_store=state_store, media_store=media_store),
            on_keep_alive=self._on_keep_alive,
        )
        self.tracker.subscribe(lambda _tracker: self._write_status_snapshot())

    def _on_keep_alive(self, enabled: bool) -> None:
        if not enabled and self._stop_event is not None:
            logger.info("No channel enabled any more; shutting down")
            self._stop_event.set()

    # -- status -------------------------------------------------------------

    def _write_status_snapshot(self) -> None:
        """Write a status snapshot to disk for CLI consumption."""
        snapshot: Dict[str, Any] = {
            "status": "running" if self._running else "stopped",
            "pid": self._pid,
            "started_at": self._started_at,
            "timestamp": datetime.now().isoformat(),
        }
        snapshot.update(self.tracker.snapshot())
        try:
            self.user_data.status_file.parent.mkdir(parents=True, exist_ok=True)
            self.user_data.status_file.write_text(
                json.dumps(snapshot, ensure_ascii=False, indent=2) + "\n",
                encoding="utf-8",
            )
        except OSError as e:
            logger.warning("Failed to write status snapshot: %s", e)

    def health_check(self) -> Dict[str, Any]:
        return {
            "status": "running" if self._running else "stopped",
            "timestamp": datetime.now().isoformat(),
            "channels": {ct.value: state.value for ct, state in self.tracker.channel_states.items()},
        }

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """启动守护进程"""
        lock = DaemonLock(self.user_data.pid_file)
        self._pid = lock.acquire()
        self._stop_event = asyncio.Event()
        self._running = True
        logger.info("chatbridge 守护进程启动 (pid=%d)", self._pid)

        try:
            self._build()
            if self.orchestrator is None:
                raise RuntimeError("bridge orchestrator was not built")
            if not self.orchestrator.any_channel_enabled:
                logger.warning("No channel is enabled in config; nothing to do")
                return
            await self.orchestrator.start()
            self._write_status_snapshot()
            await self._stop_event.wait()
        finally:
            self._running = False
            if self.orchestrator is not None:
                try:
                    await self.orchestrator.stop()
                except Exception as exc:
                    logger.warning("Bridge stop error: %s", exc)
            self._pid = None
            self._write_status_snapshot()
            lock.release()
            logger.info("chatbridge 守护进程已停止")

    async def stop(self) -> None:
        """停止守护进程"""
        if self._stop_event is not None:
            self._stop_event.set()

    async def reload(self) -> None:
        """Re-read the config file and apply channel changes in place."""
        if self.orchestrator is None:
            return
        self.config = load_config(self.config_path)
        settings = build_bridge_settings(self.config, ConfigCredentialStore(self.config))
        await self.orchestrator.apply_settings(settings)
        logger.info(
            "Configuration reloaded; enabled channels: %s",
            ", ".join(ct.value for ct in settings.enabled_channels()) or "none",
        )


def install_signal_handlers(daemon: BridgeDaemon) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(daemon.stop()))
    loop.add_signal_handler(signal.SIGHUP, lambda: asyncio.create_task(daemon.reload()))
