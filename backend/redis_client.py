"""
Redis helpers: menu caching, rate limiting and the change feed
"""
import os
import json
import logging
import redis
from typing import Optional, List, Dict, Any, Tuple, Iterator
from functools import wraps
from fastapi import HTTPException, status
import time

from config import REDIS_ENABLED

logger = logging.getLogger(__name__)

CHANGE_ENTITIES = ("orders", "guest_sessions", "bills")


class RedisClient:
    """Thin wrapper around redis-py that degrades to no-ops when Redis is down"""

    def __init__(self, client=None):
        self.redis_host = os.getenv("REDIS_HOST", "redis")
        redis_port_env = os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
        self.redis_port = int(str(redis_port_env).split(":")[-1])

        if client is not None:
            self.client = client
            return
        if not REDIS_ENABLED:
            self.client = None
            return

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except Exception as e:
            logger.warning("Could not connect to Redis at %s:%s: %s", self.redis_host, self.redis_port, e)
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except Exception:
            return False

    # ========== Menu cache ==========

    def cache_menu(self, menu: List[Dict], ttl: int = 300) -> bool:
        """Cache the public menu, 5 minutes by default"""
        if not self.is_available():
            return False
        try:
            self.client.setex("menu:all", ttl, json.dumps(menu, default=str))
            return True
        except Exception as e:
            logger.error("Failed to cache menu: %s", e)
            return False

    def get_cached_menu(self) -> Optional[List[Dict]]:
        if not self.is_available():
            return None
        try:
            cached = self.client.get("menu:all")
            if cached:
                return json.loads(cached)
        except Exception as e:
            logger.error("Failed to read cached menu: %s", e)
        return None

    def invalidate_menu_cache(self) -> bool:
        """Drop the menu cache after any menu item, category or special change"""
        if not self.is_available():
            return False
        try:
            self.client.delete("menu:all")
            return True
        except Exception as e:
            logger.error("Failed to invalidate menu cache: %s", e)
            return False

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Returns (allowed, remaining requests) for ``key``
        """
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            allowed = current <= max_requests

            return allowed, remaining
        except Exception as e:
            logger.error("Rate limit check failed: %s", e)
            return True, max_requests

    # ========== Change feed ==========

    def publish_change(self, entity: str, entity_id: int, action: str, **attrs) -> bool:
        """
        Announce that a row changed. The event only says *what* changed;
        subscribers re-fetch the row by id. Never raises.
        """
        if not self.is_available():
            return False
        event = {"entity": entity, "id": entity_id, "action": action}
        event.update(attrs)
        try:
            self.client.publish(f"changes:{entity}", json.dumps(event, default=str))
            return True
        except Exception as e:
            logger.error("Failed to publish %s change for %s %s: %s", action, entity, entity_id, e)
            return False

    def subscribe(self, entity: str, filters: Optional[Dict[str, Any]] = None,
                  poll_timeout: float = 1.0) -> Iterator[Optional[Dict]]:
        """
        Yield change events for ``entity`` matching every key in ``filters``.
        Yields None on idle polls so callers can check for disconnects.
        """
        if not self.is_available():
            return
        filters = {k: str(v) for k, v in (filters or {}).items()}
        pubsub = self.client.pubsub(ignore_subscribe_messages=True)
        pubsub.subscribe(f"changes:{entity}")
        try:
            while True:
                message = pubsub.get_message(timeout=poll_timeout)
                if not message:
                    yield None
                    continue
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Skipping malformed change event on %s", entity)
                    continue
                if all(str(event.get(k)) == v for k, v in filters.items()):
                    yield event
        finally:
            pubsub.close()

    # ========== Utilities ==========

    def get_cache_info(self) -> Dict[str, Any]:
        if not self.is_available():
            return {"status": "unavailable"}

        try:
            return {
                "status": "available",
                "menu_cached": self.client.exists("menu:all"),
                "rate_limit_keys_count": len(self.client.keys("rate_limit:*")),
            }
        except Exception as e:
            return {"status": "error", "error": str(e)}


redis_client = RedisClient()


# ========== Rate limiting decorator ==========

def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    Limit an async FastAPI endpoint to ``max_requests`` per ``window`` seconds per client host.
    The endpoint must accept a ``request`` argument.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = kwargs.get('request') or (args[0] if args and hasattr(args[0], 'client') else None)

            if request is not None and getattr(request, 'client', None) is not None:
                client_host = getattr(request.client, 'host', None) or "unknown"
                rate_key = f"{key_prefix}:{func.__name__}:{client_host}"
            else:
                rate_key = f"{key_prefix}:{func.__name__}:global"

            allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)

            if not allowed:
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail=f"Rate limit exceeded. Try again in {window} seconds."
                )

            response = await func(*args, **kwargs)
            if hasattr(response, 'headers'):
                response.headers["X-RateLimit-Limit"] = str(max_requests)
                response.headers["X-RateLimit-Remaining"] = str(remaining)
                response.headers["X-RateLimit-Reset"] = str(int(time.time()) + window)

            return response
        return wrapper
    return decorator
