"""Server-sent-event framing over an ``httpx`` streaming response.

Shared by the engine (reading the relay feed) and the relay (reading the
agent backend's per-directory ``/event`` feed).
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass

import httpx


@dataclass(frozen=True)
class SSEFrame:
    """One dispatched event: the ``event:`` name (``message`` by default) and its data."""

    event: str
    data: str


async def iter_sse(response: httpx.Response) -> AsyncIterator[SSEFrame]:
    """Yield frames from *response* as blank-line-terminated blocks arrive.

    Multi-line ``data:`` fields are joined with newlines.  Comment lines
    (``:``) and ``id:``/``retry:`` fields are ignored.  A block without data
    is not dispatched.
    """
    event = "message"
    data: list[str] = []

    async for line in response.aiter_lines():
        if not line:
            if data:
                yield SSEFrame(event=event, data="\n".join(data))
            event = "message"
            data = []
            continue
        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value or "message"
        elif name == "data":
            data.append(value)

    if data:
        yield SSEFrame(event=event, data="\n".join(data))
