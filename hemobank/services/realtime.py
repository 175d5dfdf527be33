"""
In-process publish/subscribe hub for real-time notification delivery.

Channels are plain strings: user_<id>, hospital_<id>, role_<role>. Delivery
is best effort: a subscriber whose queue is full misses the message and is
expected to re-fetch persisted notifications.
"""
import asyncio
import logging
from typing import Iterable, Optional

from hemobank.core.config import settings

logger = logging.getLogger(__name__)


def user_channel(user_id) -> str:
    return f"user_{user_id}"


def hospital_channel(hospital_id) -> str:
    return f"hospital_{hospital_id}"


def role_channel(role) -> str:
    return f"role_{getattr(role, 'value', role)}"


class Subscription:
    """One connected client listening on a set of channels."""

    def __init__(self, hub: "NotificationHub", channels: Iterable[str], maxsize: int):
        self.hub = hub
        self.channels = frozenset(channels)
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def deliver(self, channel: str, event: str, payload: dict) -> bool:
        try:
            self.queue.put_nowait({"channel": channel, "event": event, "payload": payload})
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def get(self, timeout: Optional[float] = None) -> dict:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    def close(self) -> None:
        self.hub.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class NotificationHub:
    """Channel registry. publish() never blocks and never raises on delivery."""

    def __init__(self, queue_size: Optional[int] = None):
        self.queue_size = queue_size or settings.REALTIME_QUEUE_SIZE
        self._channels: dict[str, set[Subscription]] = {}

    def subscribe(self, channels: Iterable[str]) -> Subscription:
        subscription = Subscription(self, channels, self.queue_size)
        for channel in subscription.channels:
            self._channels.setdefault(channel, set()).add(subscription)
        logger.debug(f"Subscribed to {sorted(subscription.channels)}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        for channel in subscription.channels:
            members = self._channels.get(channel)
            if not members:
                continue
            members.discard(subscription)
            if not members:
                del self._channels[channel]

    def publish(self, channel: str, payload: dict, event: str = "notification") -> int:
        """Deliver to every current subscriber of channel. Returns how many received it."""
        delivered = 0
        for subscription in list(self._channels.get(channel, ())):
            if subscription.deliver(channel, event, payload):
                delivered += 1
            else:
                logger.warning(f"Dropped {event} on {channel}: subscriber queue full")
        return delivered

    def publish_many(self, channels: Iterable[str], payload: dict, event: str = "notification") -> int:
        """Like publish(), but a subscriber on several of the channels receives the message once."""
        seen: set[Subscription] = set()
        delivered = 0
        for channel in channels:
            for subscription in list(self._channels.get(channel, ())):
                if subscription in seen:
                    continue
                seen.add(subscription)
                if subscription.deliver(channel, event, payload):
                    delivered += 1
                else:
                    logger.warning(f"Dropped {event} on {channel}: subscriber queue full")
        return delivered

    def subscriber_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self._channels.get(channel, ()))
        return len({s for members in self._channels.values() for s in members})


# Global hub
notification_hub = NotificationHub()
