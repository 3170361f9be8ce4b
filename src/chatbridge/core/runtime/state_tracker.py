"""Observable bridge status."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..channel.models import ChannelType, ConnectionState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelStatus:
    """Status details of one channel."""

    state: ConnectionState = ConnectionState.STOPPED
    connected_since: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    message_count: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "connected_since": self.connected_since.isoformat() if self.connected_since else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "message_count": self.message_count,
            "error": self.error,
        }


TrackerListener = Callable[["BridgeStateTracker"], None]


class BridgeStateTracker:
    """Read-only status view of the bridge, written by the orchestrator only.

    Single writer, many readers: every write builds a new immutable mapping
    and swaps it in, so readers always see a consistent snapshot without
    taking a lock.
    """

    def __init__(self) -> None:
        self._statuses: Mapping[ChannelType, ChannelStatus] = MappingProxyType(
            {ct: ChannelStatus() for ct in ChannelType}
        )
        self._service_running = False
        self._listeners: List[TrackerListener] = []

    # -- readers ------------------------------------------------------------

    @property
    def channel_states(self) -> Mapping[ChannelType, ConnectionState]:
        statuses = self._statuses
        return MappingProxyType({ct: status.state for ct, status in statuses.items()})

    @property
    def service_running(self) -> bool:
        return self._service_running

    def channel_status(self, channel_type: ChannelType) -> ChannelStatus:
        return self._statuses[channel_type]

    def snapshot(self) -> Dict[str, Any]:
        statuses = self._statuses
        return {
            "service_running": self._service_running,
            "channels": {ct.value: status.to_dict() for ct, status in statuses.items()},
        }

    def subscribe(self, listener: TrackerListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TrackerListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    # -- writer (orchestrator) ---------------------------------------------

    def update_channel(
        self,
        channel_type: ChannelType,
        state: ConnectionState,
        error: Optional[str] = None,
    ) -> None:
        current = self._statuses[channel_type]
        connected_since = current.connected_since
        if state is ConnectionState.CONNECTED:
            if current.state is not ConnectionState.CONNECTED or connected_since is None:
                connected_since = datetime.now(timezone.utc)
        else:
            connected_since = None
        if state in (ConnectionState.ERROR, ConnectionState.RECONNECTING):
            error_text = error
        else:
            error_text = None
        updated = replace(current, state=state, connected_since=connected_since, error=error_text)
        if updated == current:
            return
        self._swap(channel_type, updated)

    def record_message(self, channel_type: ChannelType) -> None:
        current = self._statuses[channel_type]
        self._swap(
            channel_type,
            replace(
                current,
                message_count=current.message_count + 1,
                last_message_at=datetime.now(timezone.utc),
            ),
        )

    def set_service_running(self, running: bool) -> None:
        if self._service_running == running:
            return
        self._service_running = running
        self._notify()

    def _swap(self, channel_type: ChannelType, status: ChannelStatus) -> None:
        statuses = dict(self._statuses)
        statuses[channel_type] = status
        self._statuses = MappingProxyType(statuses)
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as exc:
                logger.warning("Bridge state listener failed: %s", exc)
