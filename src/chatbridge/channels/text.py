"""Outbound text helpers shared by the channel adapters."""

from __future__ import annotations

from typing import List, Sequence

from ..core.channel.models import AttachmentRef


def split_message(text: str, limit: int) -> List[str]:
    """Split long text into chunks no longer than *limit*.

    Strategy: split by paragraph (``\\n\\n``), then by line (``\\n``), then by
    space when a piece still exceeds the limit. Only a single word longer
    than the limit is hard-split.
    """
    if not text:
        return []
    if len(text) <= limit:
        return [text]

    parts: List[str] = []
    rest = text
    while len(rest) > limit:
        window = rest[:limit + 1]
        cut = -1
        for sep in ("\n\n", "\n", " "):
            idx = window.rfind(sep, 0, limit + 1)
            if idx > 0:
                cut = idx
                break
        if cut <= 0:
            parts.append(rest[:limit])
            rest = rest[limit:]
        else:
            chunk = rest[:cut].rstrip()
            if chunk:
                parts.append(chunk)
            rest = rest[cut:]
        rest = rest.lstrip()
    if rest:
        parts.append(rest)
    return parts


def render_attachments(text: str, attachments: Sequence[AttachmentRef]) -> str:
    """Append attachment references as plain lines for text-only transports."""
    if not attachments:
        return text
    lines = [text] if text else []
    for att in attachments:
        label = att.name or att.kind
        lines.append(f"[{label}] {att.ref}")
    return "\n".join(lines)
