"""Line framers that turn a vendor byte stream into discrete frames.

Adapters feed ``httpx.Response.aiter_lines()`` into one of these and decode
each frame into :data:`~chatgateway.models.StreamEvent` values.  The framers
know nothing about JSON or vendor vocabularies.
"""

import json
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from chatgateway.errors import StreamParseError

DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class SSEMessage:
    """One dispatched Server-Sent Event."""

    event: str | None
    data: str


async def iter_sse(lines: AsyncIterable[str]) -> AsyncIterator[SSEMessage]:
    """Decode Server-Sent Events from an iterable of text lines.

    Follows the SSE dispatch rules: ``event:`` sets the event type, ``data:``
    lines accumulate (joined with ``\\n``), a blank line dispatches, lines
    starting with ``:`` are comments.  A pending event is flushed at EOF so a
    vendor that forgets the trailing blank line still delivers its last frame.
    """
    event: str | None = None
    data: list[str] = []

    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if data:
                yield SSEMessage(event=event, data="\n".join(data))
            event, data = None, []
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data.append(value)
        # "id" and "retry" fields carry nothing the gateway uses.

    if data:
        yield SSEMessage(event=event, data="\n".join(data))


async def iter_ndjson(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """Yield each non-blank line of a newline-delimited JSON stream."""
    async for raw in lines:
        line = raw.strip()
        if line:
            yield line


def parse_json_frame(payload: str) -> dict[str, Any]:
    """Decode one frame's JSON object.

    Raises:
        StreamParseError: When the payload is not a JSON object.
    """
    try:
        decoded = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise StreamParseError(f"malformed stream frame: {payload[:200]!r}") from exc
    if not isinstance(decoded, dict):
        raise StreamParseError(f"stream frame is not a JSON object: {payload[:200]!r}")
    return decoded
