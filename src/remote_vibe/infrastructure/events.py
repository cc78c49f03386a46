"""Mirror session events onto Redis pub/sub for out-of-process consumers.

Publishing is a no-op unless ``REDIS_URL`` is set. Failures never affect the
session pipeline: the publisher logs, drops the client, and reconnects on the
next event.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, Optional

import redis


logger = logging.getLogger(__name__)

CHANNEL_PREFIX = "remote_vibe.events"


class RedisPublisher:
    def __init__(self, url: str) -> None:
        self._url = url
        self._client: Optional[redis.Redis] = None
        self._connect()

    def _connect(self) -> None:
        try:
            self._client = redis.Redis.from_url(self._url, socket_timeout=0.5)
            self._client.ping()
        except Exception as exc:
            logger.warning("Redis event publisher unavailable at %s: %s", self._url, exc)
            self._client = None

    def publish(self, channel: str, payload: Dict[str, Any]) -> bool:
        if not self._client:
            self._connect()
        if not self._client:
            return False
        try:
            self._client.publish(channel, json.dumps(payload))
            return True
        except Exception as exc:
            logger.warning("Redis publish to %s failed: %s", channel, exc)
            self._client = None
            return False


_publisher: Optional[RedisPublisher] = None


def _get_publisher() -> Optional[RedisPublisher]:
    global _publisher
    if _publisher is not None:
        return _publisher
    url = os.getenv("REDIS_URL")
    if not url:
        return None
    _publisher = RedisPublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    publisher = _get_publisher()
    if not publisher:
        return
    publisher.publish(f"{CHANNEL_PREFIX}.{event_type}", payload)


def load_event_client() -> Optional[RedisPublisher]:
    return _get_publisher()
