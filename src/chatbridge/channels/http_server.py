"""Embedded uvicorn server used by the webhook and WebChat adapters."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Iterator

import uvicorn

from ..core.channel.errors import ConnectError

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 5.0


class _EmbeddedUvicorn(uvicorn.Server):
    """uvicorn server that leaves process signal handling to the daemon."""

    def install_signal_handlers(self) -> None:
        return None

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class EmbeddedServer:
    """Runs an ASGI app on host:port inside the caller's event loop."""

    def __init__(self, app, host: str, port: int):
        self.host = host
        self.port = int(port)
        self._server = _EmbeddedUvicorn(
            uvicorn.Config(app, host=host, port=self.port, log_level="warning", lifespan="off")
        )

    async def serve(self, on_started: Callable[[], None]) -> None:
        """Serve until shut down; calls *on_started* once the socket is bound.

        Raises:
            ConnectError: the server could not start or stopped unexpectedly.
        """
        serve_task = asyncio.create_task(self._serve())
        try:
            while not self._server.started and not serve_task.done():
                await asyncio.sleep(0.05)
            if self._server.started:
                logger.info("Listening on %s:%d", self.host, self.port)
                on_started()
            await serve_task
        finally:
            if not serve_task.done():
                self._server.should_exit = True
                done, _ = await asyncio.wait({serve_task}, timeout=SHUTDOWN_TIMEOUT_SECONDS)
                if not done:
                    serve_task.cancel()

    async def _serve(self) -> None:
        try:
            await self._server.serve()
        except SystemExit as exc:
            # uvicorn exits the process when it cannot bind.
            raise ConnectError(f"cannot serve on {self.host}:{self.port}") from exc
        if not self._server.started:
            raise ConnectError(f"cannot serve on {self.host}:{self.port}")
