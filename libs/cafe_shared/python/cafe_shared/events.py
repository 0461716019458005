from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Callable, Dict, Optional

import redis

_log = logging.getLogger("cafe.events")


class EventPublisher:
  """
  Publishes domain events to Redis Pub/Sub (`events:{domain}`) so that other
  processes (a second API worker, the kitchen display) see them too.

  Disabled unless EVENTS_ENABLED=true. A disabled or failing publisher writes
  the event to the structured log instead; callers never see an exception.
  """

  def __init__(self, url: Optional[str] = None, enabled: Optional[bool] = None) -> None:
    self._url = url or os.getenv("EVENTS_REDIS_URL", "redis://localhost:6379/0")
    if enabled is None:
      enabled = os.getenv("EVENTS_ENABLED", "false").lower() == "true"
    self._enabled = enabled
    self._client: Optional[redis.Redis] = None
    if self._enabled:
      try:
        self._client = redis.Redis.from_url(self._url)
      except (redis.RedisError, ValueError) as e:
        _log.warning("events: cannot use redis '%s': %s", self._url, e)
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
        self._client.publish(f"events:{domain}", json.dumps(data, default=str))  # type: ignore[union-attr]
        return
      except redis.RedisError as e:
        _log.warning("events: redis publish failed: %s", e)
    _log.info("event", extra={"event": data})

  def subscribe(self, domain: str, handler: Callable[[Dict[str, Any]], None], stop: Callable[[], bool]) -> None:
    """
    Blocking consumer for `events:{domain}`; returns once `stop()` is true.
    """
    if not self.enabled:
      return
    pubsub = self._client.pubsub(ignore_subscribe_messages=True)  # type: ignore[union-attr]
    pubsub.subscribe(f"events:{domain}")
    try:
      while not stop():
        msg = pubsub.get_message(timeout=1.0)
        if not msg:
          continue
        try:
          handler(json.loads(msg["data"]))
        except (ValueError, KeyError, TypeError):
          _log.warning("events: dropping malformed message on %s", domain)
    finally:
      pubsub.close()

  def close(self) -> None:
    if self._client is not None:
      try:
        self._client.close()
      except redis.RedisError:
        pass
