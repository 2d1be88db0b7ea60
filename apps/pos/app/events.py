from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict

import redis

_log = logging.getLogger("tablepos.events")


class EventPublisher:
    """
    Publisher for POS domain events such as ``bill_settled``.

    With EVENTS_ENABLED=true the JSON payload goes to Redis Pub/Sub on
    ``events:<domain>``; otherwise, or when Redis is unreachable, the event
    is written to the structured log so downstream collectors still see it.
    """

    def __init__(self) -> None:
        self._url = os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
        self._enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
        self._client = None
        if self._enabled:
            try:
                self._client = redis.Redis.from_url(self._url)
            except Exception as e:
                _log.warning("events: failed to connect to redis '%s': %s", self._url, e)
                self._enabled = False

    @property
    def enabled(self) -> bool:
        return self._enabled and self._client is not None

    def publish(self, domain: str, event_type: str, payload: Dict[str, Any]) -> None:
        data = {
            "domain": domain,
            "type": event_type,
            "ts_ms": int(time.time() * 1000),
            "payload": payload,
        }
        if self.enabled:
            try:
                self._client.publish(f"events:{domain}", json.dumps(data, default=str))
                return
            except redis.RedisError as e:
                _log.warning("events: redis publish failed: %s", e)
        _log.info("event", extra={"event": data})


_publisher: EventPublisher | None = None


def get_publisher() -> EventPublisher:
    global _publisher
    if _publisher is None:
        _publisher = EventPublisher()
    return _publisher


def emit_event(domain: str, event_type: str, payload: Dict[str, Any]) -> None:
    """Best-effort: an event that cannot be published is logged and dropped."""
    try:
        get_publisher().publish(domain, event_type, payload)
    except Exception:
        _log.exception("events: dropping %s/%s", domain, event_type)
