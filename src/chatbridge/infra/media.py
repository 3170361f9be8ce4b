"""
Local storage for images received from chat platforms.

Platform file references (Telegram ``file_id``, Slack ``url_private``,
Matrix ``mxc://`` URIs) need the bot's credentials to resolve, so adapters
fetch inbound images themselves and hand the engine a local path instead.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Optional

from ..core.channel.models import ChannelType

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "png": ".png",
    "gif": ".gif",
    "webp": ".webp",
    "bmp": ".bmp",
}


def image_extension(content_type: Optional[str]) -> str:
    """Pick a file extension from a Content-Type header; JPEG when unknown."""
    content_type = (content_type or "").lower()
    for marker, ext in _EXTENSIONS.items():
        if marker in content_type:
            return ext
    return ".jpg"


class MediaStore:
    """Directory of downloaded inbound images, one subdirectory per channel."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def save_image(self, channel_type: ChannelType, data: bytes, content_type: Optional[str] = None) -> Path:
        target_dir = self.root / channel_type.value
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / f"{uuid.uuid4().hex}{image_extension(content_type)}"
        path.write_bytes(data)
        logger.debug("Saved %d-byte image to %s", len(data), path)
        return path
