from __future__ import annotations

import asyncio
import logging
from typing import Literal

from fastapi import WebSocket
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from framix_server.services.jobs.hub import Event

logger = logging.getLogger(__name__)

_CLOSE = None

DEFAULT_MAX_PENDING = 256


class ClientMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["subscribe", "unsubscribe"]
    jobId: str = Field(min_length=1)


class WebSocketObserver:
    """
    Hub observer bound to one WebSocket connection.

    ``deliver`` hands the event to the connection's writer without awaiting,
    so a slow client never stalls the dispatcher. Events reach the socket in
    the order they were delivered. A client that falls ``max_pending``
    events behind is disconnected; it can reconnect and resubscribe to
    replay current state.
    """

    def __init__(self, websocket: WebSocket, *, max_pending: int = DEFAULT_MAX_PENDING) -> None:
        if max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        self._websocket = websocket
        # One slot beyond the limit is kept for the close marker.
        self._outbox: asyncio.Queue[Event | None] = asyncio.Queue(maxsize=max_pending + 1)
        self._max_pending = max_pending
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: Event) -> None:
        if self._closed:
            raise ConnectionError("websocket observer is closed")
        if self._outbox.qsize() >= self._max_pending:
            self._drop_backlog()
            raise ConnectionError(
                f"websocket client fell {self._max_pending} events behind; closing"
            )
        self._outbox.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.put_nowait(_CLOSE)

    async def pump(self) -> None:
        while True:
            event = await self._outbox.get()
            if event is _CLOSE:
                try:
                    await self._websocket.close()
                except Exception:
                    logger.debug("websocket close failed", exc_info=True)
                return
            try:
                await self._websocket.send_json(event)
            except Exception:
                logger.debug("websocket send failed; dropping observer", exc_info=True)
                self._closed = True
                return

    def _drop_backlog(self) -> None:
        dropped = 0
        while not self._outbox.empty():
            self._outbox.get_nowait()
            dropped += 1
        logger.warning("websocket outbox overflow; dropped %s pending events", dropped)
        self.close()


def parse_client_message(raw: str) -> ClientMessage | None:
    """Return the subscribe/unsubscribe request, or None for anything else."""
    try:
        return ClientMessage.model_validate_json(raw)
    except ValidationError:
        return None
