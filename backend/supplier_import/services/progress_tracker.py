"""Publish record updates to Redis (cache + pub/sub) and subscribe to them."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any, Callable, Protocol

from redis import Redis
from redis.exceptions import RedisError

from supplier_import.core.config import get_settings
from supplier_import.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

settings = get_settings()
redis_client: Redis = create_redis_client(settings.redis_url, decode_responses=True)
SNAPSHOT_PREFIX = "records:snapshot:"
CHANNEL_PREFIX = "records:"
SNAPSHOT_TTL = timedelta(hours=24)


class Subscription(Protocol):
    def close(self) -> None: ...


def channel_name(kind: str, record_id: str) -> str:
    return f"{CHANNEL_PREFIX}{kind}:{record_id}"


def _snapshot_key(kind: str, record_id: str) -> str:
    return f"{SNAPSHOT_PREFIX}{kind}:{record_id}"


def publish_record_update(kind: str, record_id: str, payload: dict[str, Any]) -> None:
    """Cache the latest payload and notify subscribers of ``kind:record_id``.

    Redis being down must not break ingestion; pollers still see the
    database state.
    """
    message = json.dumps(payload, default=str)
    try:
        redis_client.set(
            _snapshot_key(kind, record_id),
            message,
            ex=int(SNAPSHOT_TTL.total_seconds()),
        )
        redis_client.publish(channel_name(kind, record_id), message)
    except RedisError as e:
        logger.warning(f"Failed to publish {kind} update for {record_id}: {e}")


def fetch_cached_update(kind: str, record_id: str) -> dict[str, Any]:
    """Return the last published payload, or ``{}``."""
    try:
        raw = redis_client.get(_snapshot_key(kind, record_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


class RedisSubscription:
    """Pub/sub listener for one record, delivered on a background thread."""

    def __init__(self, client: Redis, kind: str, record_id: str, callback: Callable[[dict[str, Any]], None]):
        self.channel = channel_name(kind, record_id)
        self._callback = callback
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(**{self.channel: self._handle})
        self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)

    def _handle(self, message: dict[str, Any]) -> None:
        try:
            payload = json.loads(message["data"])
        except (TypeError, json.JSONDecodeError):
            logger.warning(f"Ignoring malformed message on {self.channel}")
            return
        self._callback(payload)

    def close(self) -> None:
        try:
            self._thread.stop()
            self._pubsub.close()
        except RedisError as e:
            logger.warning(f"Error closing subscription {self.channel}: {e}")


def subscribe(kind: str, record_id: str, callback: Callable[[dict[str, Any]], None]) -> Subscription | None:
    """Subscribe to pushes for one record; ``None`` when Redis is unreachable."""
    try:
        return RedisSubscription(redis_client, kind, record_id, callback)
    except RedisError as e:
        logger.warning(f"Push channel unavailable for {kind}:{record_id}, polling only: {e}")
        return None
