import asyncio
import logging
from typing import Dict, Set

from pydantic import BaseModel

from contest_engine.models.messages import encode_message

logger = logging.getLogger(__name__)


class Subscription:
    """
    One connected client's mailbox.

    Frames are queued already encoded. When the queue is full the oldest
    frame is dropped so a slow reader never blocks publishers.
    """

    def __init__(self, maxsize: int):
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=maxsize)
        self.topics: Set[str] = set()
        self.dropped = 0

    def deliver(self, frame: str) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(frame)

    async def receive(self) -> str:
        return await self.queue.get()


class TopicHub:
    """
    Topic fan-out for the live channel.
    Contest leaderboards publish on ``/topic/contest/{id}``, the price feed
    on ``/topic/live-prices``; each client subscribes to what it shows.
    """

    def __init__(self, queue_size: int = 256):
        self.queue_size = queue_size
        self.topics: Dict[str, Set[Subscription]] = {}

    def open(self) -> Subscription:
        return Subscription(self.queue_size)

    def subscribe(self, sub: Subscription, topic: str) -> None:
        self.topics.setdefault(topic, set()).add(sub)
        sub.topics.add(topic)
        logger.debug(f"Subscribed to {topic} ({len(self.topics[topic])} listeners)")

    def unsubscribe(self, sub: Subscription, topic: str) -> None:
        listeners = self.topics.get(topic)
        if listeners is not None:
            listeners.discard(sub)
            if not listeners:
                del self.topics[topic]
        sub.topics.discard(topic)

    def close(self, sub: Subscription) -> None:
        """Drop every subscription held by a disconnected client."""
        for topic in list(sub.topics):
            self.unsubscribe(sub, topic)
        if sub.dropped:
            logger.info(f"Subscriber closed after dropping {sub.dropped} frames")

    def publish(self, topic: str, message: BaseModel) -> int:
        """Queue a message for every subscriber of ``topic``; returns the receiver count."""
        listeners = self.topics.get(topic)
        if not listeners:
            return 0
        frame = encode_message(message)
        for sub in list(listeners):
            sub.deliver(frame)
        return len(listeners)

    def subscriber_count(self, topic: str | None = None) -> int:
        if topic is not None:
            return len(self.topics.get(topic, ()))
        return len({sub for subs in self.topics.values() for sub in subs})
