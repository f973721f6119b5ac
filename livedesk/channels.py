"""
Outbound channel handles for customer and agent WebSocket connections.
"""
import itertools
from typing import Any, Dict, Iterable

from loguru import logger

_channel_ids = itertools.count(1)


class Channel:
    """
    Wraps one live WebSocket connection.

    A handle is either open or closed; closed is final. Owners that lose the
    peer entirely hold ``None`` instead of a handle, so callers can tell
    "no connection" apart from "stale connection".
    """

    def __init__(self, websocket: Any, label: str = "client"):
        self.websocket = websocket
        self.label = label
        self.channel_id = next(_channel_ids)
        self._closed = False

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<Channel {self.label}#{self.channel_id} {state}>"

    @property
    def is_open(self) -> bool:
        return not self._closed

    def mark_closed(self):
        self._closed = True

    async def send(self, message: Dict[str, Any]) -> bool:
        """Send a JSON event; a failed send marks the channel closed instead of raising."""
        if self._closed:
            logger.debug("Dropping {} for closed channel {}", message.get("type"), self)
            return False
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.warning("Error sending {} to {}: {}", message.get("type"), self, e)
            self._closed = True
            return False

    async def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close()
        except Exception as e:
            logger.debug("Error closing {}: {}", self, e)


def is_open(channel) -> bool:
    return channel is not None and channel.is_open


async def send_if_open(channel, message: Dict[str, Any]) -> bool:
    if not is_open(channel):
        return False
    return await channel.send(message)


async def broadcast(channels: Iterable[Channel], message: Dict[str, Any]) -> int:
    """Send ``message`` to every open channel, returning how many deliveries succeeded."""
    delivered = 0
    for channel in list(channels):
        if await send_if_open(channel, message):
            delivered += 1
    return delivered
