"""Access-token check for the WebChat endpoint.

The token may be passed as the ``X-Access-Token`` header or the ``?token=``
query parameter. When no token is configured, every connection is allowed.
"""

from __future__ import annotations

import logging
import secrets
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def extract_access_token(websocket: WebSocket) -> Optional[str]:
    """Extract the access token from header or query parameter."""
    token = websocket.headers.get("x-access-token")
    if token:
        return token
    token = websocket.query_params.get("token")
    if token:
        return token
    return None


def verify_ws_access_token(websocket: WebSocket, configured_token: str) -> bool:
    """Verify the access token of a WebSocket upgrade.

    Returns True if authenticated (or no token is configured).
    Returns False if authentication failed (caller should reject the upgrade).
    """
    if not configured_token:
        return True
    provided = extract_access_token(websocket)
    if not provided or not secrets.compare_digest(provided, configured_token):
        return False
    return True
