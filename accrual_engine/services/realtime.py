"""Realtime notification channels.

The dispatcher pushes user/admin updates through an explicit channel object
instead of a global event emitter. ``NotificationChannel`` fans out to
in-process subscriber queues; ``RedisNotificationChannel`` publishes JSON on
redis pub/sub for out-of-process websocket gateways. Consumers must tolerate
duplicates since outbox delivery is at-least-once.
"""
from __future__ import annotations

import json
import queue
import threading
from typing import Any, Dict, List, Optional, Protocol

import redis

from accrual_engine.config import NOTIFICATION_SETTINGS, REDIS_URL
from accrual_engine.utils import get_logger

logger = get_logger(__name__)

ADMIN_TOPIC = "admin"


def user_topic(user_id: int) -> str:
    return f"user:{user_id}"


class Notifier(Protocol):
    def send_user_update(self, user_id: int, message: Dict[str, Any]) -> int: ...
    def send_admin_update(self, message: Dict[str, Any]) -> int: ...


class NotificationChannel:
    """In-process pub/sub. ``subscribe`` returns a queue receiving every message for the topic."""

    def __init__(self, *, max_queue_size: int = 1000):
        self._subscribers: Dict[str, List["queue.Queue[Dict[str, Any]]"]] = {}
        self._lock = threading.Lock()
        self._max_queue_size = max_queue_size

    def subscribe(self, topic: str) -> "queue.Queue[Dict[str, Any]]":
        q: "queue.Queue[Dict[str, Any]]" = queue.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers.setdefault(topic, []).append(q)
        return q

    def unsubscribe(self, topic: str, q: "queue.Queue[Dict[str, Any]]") -> None:
        with self._lock:
            subs = self._subscribers.get(topic, [])
            if q in subs:
                subs.remove(q)

    def publish(self, topic: str, message: Dict[str, Any]) -> int:
        with self._lock:
            subs = list(self._subscribers.get(topic, []))
        delivered = 0
        for q in subs:
            try:
                q.put_nowait(message)
                delivered += 1
            except queue.Full:
                logger.warning("Subscriber queue full; dropping realtime message", topic=topic)
        return delivered

    def send_user_update(self, user_id: int, message: Dict[str, Any]) -> int:
        return self.publish(user_topic(user_id), message)

    def send_admin_update(self, message: Dict[str, Any]) -> int:
        return self.publish(ADMIN_TOPIC, message)


class RedisNotificationChannel:
    def __init__(self, client: Optional[redis.Redis] = None, *, redis_url: str | None = None):
        self._client = client or redis.from_url(redis_url or REDIS_URL)
        self._user_prefix = NOTIFICATION_SETTINGS["user_channel_prefix"]
        self._admin_channel = NOTIFICATION_SETTINGS["admin_channel"]

    def _publish(self, channel: str, message: Dict[str, Any]) -> int:
        # Errors propagate so the outbox retries the delivery
        return int(self._client.publish(channel, json.dumps(message, default=str)) or 0)

    def send_user_update(self, user_id: int, message: Dict[str, Any]) -> int:
        return self._publish(f"{self._user_prefix}{user_id}", message)

    def send_admin_update(self, message: Dict[str, Any]) -> int:
        return self._publish(self._admin_channel, message)


def create_notifier() -> Notifier:
    backend = NOTIFICATION_SETTINGS.get("backend", "memory")
    if backend == "redis":
        logger.info("Using redis notification channel")
        return RedisNotificationChannel()
    return NotificationChannel()


__all__ = [
    "Notifier",
    "NotificationChannel",
    "RedisNotificationChannel",
    "create_notifier",
    "user_topic",
    "ADMIN_TOPIC",
]
