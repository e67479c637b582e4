import os
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List

import redis

from .events import Event

logger = logging.getLogger(__name__)

GLOBAL_CHANNEL = "global:announcements"


class NotificationEmitter(ABC):
    """Best-effort fan-out of committed changes to connected listeners."""

    @abstractmethod
    def emit(self, event: Event):
        ...

    def close(self):
        pass


class LocalEmitter(NotificationEmitter):
    """In-process fan-out. A failing handler does not stop the others."""

    def __init__(self):
        self._handlers: List[Callable[[Event], None]] = []

    def subscribe(self, handler: Callable[[Event], None]):
        self._handlers.append(handler)

    def unsubscribe(self, handler: Callable[[Event], None]):
        if handler in self._handlers:
            self._handlers.remove(handler)

    def emit(self, event: Event):
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Notification handler failed for {event.type}: {e}")


class RedisNotificationEmitter(NotificationEmitter):
    """Publishes events on Redis channels for the WebSocket gateway to relay."""

    def __init__(self, redis_url: str = None, redis_client: redis.Redis = None):
        self.redis_url = redis_url or os.getenv('REDIS_URL', 'redis://localhost:6379')
        self.redis = redis_client or redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )

    def emit(self, event: Event):
        payload = event.to_json()
        self.redis.publish(GLOBAL_CHANNEL, payload)
        if event.tournament_id:
            self.redis.publish(f"tournament:{event.tournament_id}:events", payload)


class BackgroundEmitter(NotificationEmitter):
    """Delivers through another emitter on a worker thread so callers never wait."""

    def __init__(self, inner: NotificationEmitter, max_workers: int = 1):
        self.inner = inner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='notify')

    def emit(self, event: Event):
        self._executor.submit(self._deliver, event)

    def _deliver(self, event: Event):
        try:
            self.inner.emit(event)
        except Exception as e:
            logger.error(f"Failed to deliver {event.type} for {event.tournament_id}: {e}")

    def close(self):
        self._executor.shutdown(wait=True)
        self.inner.close()
