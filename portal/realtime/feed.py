"""
In-process change feed.

The announcement store publishes one MutationEvent per committed write; the
feed hands it, in arrival order, to every connected channel. A channel that
loses its connection misses events until it reconnects, and its owner is
expected to reconcile with a full scan.
"""
import logging
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, ConfigDict

from portal.exceptions import TransportError
from portal.schemas.announcements import AnnouncementRecord

logger = logging.getLogger(__name__)


class MutationKind(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class MutationEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: MutationKind
    announcement_id: str
    # For DELETE this is the record as it was just before removal
    record: AnnouncementRecord
    sequence: int


EventCallback = Callable[[MutationEvent], None]
LostCallback = Callable[[TransportError], None]


class Channel:
    """One logical connection between the feed and a subscriber."""

    def __init__(self, feed: "ChangeFeed", callback: EventCallback, on_lost: Optional[LostCallback], name: str):
        self._feed = feed
        self._callback = callback
        self._on_lost = on_lost
        self.name = name
        self.connected = True
        self.closed = False

    def deliver(self, event: MutationEvent) -> None:
        self._callback(event)

    def lose(self, error: TransportError) -> None:
        if not self.connected or self.closed:
            return
        self.connected = False
        logger.warning(f"Channel {self.name} lost: {error.detail}")
        if self._on_lost is not None:
            self._on_lost(error)

    async def reconnect(self) -> None:
        await self._feed.reconnect_channel(self)

    def close(self) -> None:
        self._feed.close_channel(self)


class ChangeFeed:
    def __init__(self):
        self._channels: List[Channel] = []
        self._sequence = 0
        self._online = True

    @property
    def online(self) -> bool:
        return self._online

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    @property
    def last_sequence(self) -> int:
        return self._sequence

    async def open_channel(
        self,
        callback: EventCallback,
        on_lost: Optional[LostCallback] = None,
        name: str = "channel",
    ) -> Channel:
        if not self._online:
            raise TransportError("Change feed is unavailable")
        channel = Channel(self, callback, on_lost, name)
        self._channels.append(channel)
        logger.debug(f"Opened channel {name} ({len(self._channels)} open)")
        return channel

    async def reconnect_channel(self, channel: Channel) -> None:
        if channel.closed:
            raise TransportError(f"Channel {channel.name} is closed")
        if not self._online:
            raise TransportError("Change feed is unavailable")
        channel.connected = True
        logger.info(f"Channel {channel.name} reconnected")

    def close_channel(self, channel: Channel) -> None:
        if channel.closed:
            return
        channel.closed = True
        channel.connected = False
        if channel in self._channels:
            self._channels.remove(channel)
        logger.debug(f"Closed channel {channel.name} ({len(self._channels)} open)")

    def publish(self, kind: MutationKind, record: AnnouncementRecord) -> MutationEvent:
        """Number the mutation and deliver it synchronously to every connected channel."""
        self._sequence += 1
        event = MutationEvent(
            kind=kind,
            announcement_id=record.id,
            record=record,
            sequence=self._sequence,
        )
        for channel in list(self._channels):
            if not channel.connected:
                continue
            try:
                channel.deliver(event)
            except Exception as e:
                logger.error(f"Delivery to channel {channel.name} failed: {str(e)}", exc_info=True)
                channel.lose(TransportError(f"Delivery failed: {str(e)}"))
        return event

    def interrupt(self, channel: Channel, reason: str = "connection interrupted") -> None:
        channel.lose(TransportError(reason))

    def go_offline(self, reason: str = "transport offline") -> None:
        self._online = False
        logger.warning(f"Change feed offline: {reason}")
        for channel in list(self._channels):
            channel.lose(TransportError(reason))

    def go_online(self) -> None:
        self._online = True
        logger.info("Change feed online")
