"""
WebChat channel adapter: a self-hosted HTTP + WebSocket chat endpoint.

Protocol (JSON text frames on ``/ws``):
    server → client  {"type": "session", "session_id": "..."}  after upgrade
    client → server  {"type": "message", "text": "..."}
    server → client  {"type": "response", "text": "..."}
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, status
from fastapi.responses import HTMLResponse

from ..core.channel.errors import ProtocolError, SendError
from ..core.channel.models import ChannelType, InboundMessage, OutboundMessage
from ..core.runtime.backoff import Backoff
from ..infra.media import MediaStore
from ..infra.persistence import JsonStateStore
from ..web.auth import verify_ws_access_token
from .base import BaseChannelAdapter
from .http_server import EmbeddedServer

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

CHAT_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>chatbridge</title>
<style>
body { font-family: sans-serif; margin: 0; display: flex; flex-direction: column; height: 100vh; }
#log { flex: 1; overflow-y: auto; padding: 12px; }
.msg { margin: 6px 0; white-space: pre-wrap; }
.me { text-align: right; color: #1a5fb4; }
form { display: flex; padding: 8px; border-top: 1px solid #ddd; }
input { flex: 1; padding: 8px; }
</style>
</head>
<body>
<div id="log"></div>
<form id="form"><input id="input" autocomplete="off" placeholder="Message"><button>Send</button></form>
<script>
const log = document.getElementById("log");
const token = new URLSearchParams(location.search).get("token") || "";
const proto = location.protocol === "https:" ? "wss" : "ws";
const ws = new WebSocket(`${proto}://${location.host}/ws?token=${encodeURIComponent(token)}`);
function add(text, cls) {
  const div = document.createElement("div");
  div.className = "msg " + cls;
  div.textContent = text;
  log.appendChild(div);
  log.scrollTop = log.scrollHeight;
}
ws.onmessage = (ev) => {
  const data = JSON.parse(ev.data);
  if (data.type === "response") add(data.text, "bot");
};
ws.onclose = () => add("Disconnected.", "bot");
document.getElementById("form").onsubmit = (ev) => {
  ev.preventDefault();
  const input = document.getElementById("input");
  if (!input.value.trim()) return;
  ws.send(JSON.stringify({type: "message", text: input.value}));
  add(input.value, "me");
  input.value = "";
};
</script>
</body>
</html>
"""


class WebChatChannel(BaseChannelAdapter):
    """Locally hosted chat endpoint; each WebSocket connection is one chat."""

    channel_type = ChannelType.WEBCHAT

    def __init__(
        self,
        state_store: Optional[JsonStateStore] = None,
        backoff: Optional[Backoff] = None,
        media_store: Optional[MediaStore] = None,
    ):
        super().__init__(state_store=state_store, backoff=backoff, media_store=media_store)
        self._sessions: Dict[str, WebSocket] = {}

    @property
    def _access_token(self) -> str:
        token = self._config.option("access_token", "") or self._config.credential("access_token")
        return str(token or "")

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def build_app(self) -> FastAPI:
        app = FastAPI(title="chatbridge WebChat", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get("/", response_class=HTMLResponse)
        async def index() -> str:
            return CHAT_PAGE

        @app.get("/health")
        async def health() -> dict:
            return {"status": "ok"}

        @app.websocket("/ws")
        async def chat(websocket: WebSocket) -> None:
            if not verify_ws_access_token(websocket, self._access_token):
                await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
                return
            await websocket.accept()
            session_id = uuid.uuid4().hex
            self._sessions[session_id] = websocket
            logger.info("WebChat session %s connected", session_id)
            try:
                await websocket.send_json({"type": "session", "session_id": session_id})
                while True:
                    raw = await websocket.receive_text()
                    message = self._parse_or_drop(self._parse_frame, session_id, raw)
                    if message is not None:
                        self._dispatch(message)
            except WebSocketDisconnect:
                pass
            finally:
                self._sessions.pop(session_id, None)
                logger.info("WebChat session %s closed", session_id)

        return app

    def _parse_frame(self, session_id: str, raw: str) -> Optional[InboundMessage]:
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise ProtocolError(f"undecodable frame: {exc}", self.channel_type) from exc
        if not isinstance(data, dict):
            raise ProtocolError("frame is not an object", self.channel_type)
        if data.get("type") != "message":
            return None
        text = str(data.get("text") or "").strip()
        if not text:
            return None
        return InboundMessage(
            channel_type=self.channel_type,
            external_chat_id=session_id,
            external_user_id=session_id,
            external_user_display_name=str(data.get("name") or "WebChat"),
            text=text,
        )

    async def _run_session(self) -> None:
        server = EmbeddedServer(
            self.build_app(),
            host=str(self._config.option("host", DEFAULT_HOST)),
            port=int(self._config.option("port", DEFAULT_PORT)),
        )
        await server.serve(on_started=self._mark_connected)

    async def _close_session(self) -> None:
        self._sessions.clear()

    async def send(self, message: OutboundMessage) -> None:
        websocket = self._sessions.get(str(message.external_chat_id))
        if websocket is None:
            raise SendError(f"WebChat session {message.external_chat_id} is gone", self.channel_type)
        frame = {"type": "response", "text": message.text}
        if message.attachments:
            frame["attachments"] = [
                {"kind": att.kind, "ref": att.ref, "name": att.name} for att in message.attachments
            ]
        try:
            await websocket.send_json(frame)
        except (RuntimeError, WebSocketDisconnect) as exc:
            self._sessions.pop(str(message.external_chat_id), None)
            raise SendError(f"WebChat send failed: {exc}", self.channel_type) from exc
