import json
import time
import logging
from typing import Optional
import redis

from .config import SETTINGS
from .metrics import backpressure_active, redis_latency_seconds

logger = logging.getLogger(__name__)


class Store:
    """Redis-backed state shared by all workers: rate-limit throttles and fetched policy files."""

    def __init__(self):
        self.r = redis.Redis.from_url(SETTINGS.redis_url, decode_responses=True)

    # --- Rate limit backpressure (per installation) ---
    def throttle_key(self, installation_id: int) -> str:
        return SETTINGS.redis_key("throttle", str(installation_id))

    def set_throttle(self, installation_id: int, until_epoch: float, reason: str = "rate_limit") -> None:
        ttl = max(1, int(until_epoch - time.time()))
        logger.debug(
            "Setting throttle for installation %s until %s (ttl=%ss) reason=%s",
            installation_id,
            until_epoch,
            ttl,
            reason,
        )
        t0 = time.perf_counter()
        try:
            self.r.set(self.throttle_key(installation_id), json.dumps({"until": until_epoch, "reason": reason}), ex=ttl)
        finally:
            redis_latency_seconds.labels(op="set_throttle").observe(time.perf_counter() - t0)
        backpressure_active.labels(installation=str(installation_id)).set(1)

    def get_throttle(self, installation_id: int) -> Optional[dict]:
        raw = self.r.get(self.throttle_key(installation_id))
        if not raw:
            backpressure_active.labels(installation=str(installation_id)).set(0)
            return None
        backpressure_active.labels(installation=str(installation_id)).set(1)
        return json.loads(raw)

    def throttle_remaining(self, installation_id: int) -> float:
        """Seconds until the installation's throttle lifts, 0 when not throttled."""
        throttle = self.get_throttle(installation_id)
        if not throttle:
            return 0.0
        try:
            until = float(throttle.get("until", 0))
        except (TypeError, ValueError):
            return 0.0
        return max(0.0, until - time.time())

    # --- Fetched policy files ---
    def config_key(self, owner: str, repo: str, ref: str) -> str:
        return SETTINGS.redis_key("config", f"{owner}/{repo}", ref)

    def get_cached_config(self, owner: str, repo: str, ref: str) -> Optional[dict]:
        """Return {"path": ..., "content": ...} for a cached lookup; content is None when no file was found."""
        t0 = time.perf_counter()
        try:
            raw = self.r.get(self.config_key(owner, repo, ref))
        finally:
            redis_latency_seconds.labels(op="get_config").observe(time.perf_counter() - t0)
        if raw is None:
            return None
        return json.loads(raw)

    def put_cached_config(
        self, owner: str, repo: str, ref: str, path: Optional[str], content: Optional[str], ttl: int
    ) -> None:
        if ttl <= 0:
            return
        t0 = time.perf_counter()
        try:
            self.r.set(self.config_key(owner, repo, ref), json.dumps({"path": path, "content": content}), ex=ttl)
        finally:
            redis_latency_seconds.labels(op="put_config").observe(time.perf_counter() - t0)

    def invalidate_config(self, owner: str, repo: str, ref: str) -> None:
        self.r.delete(self.config_key(owner, repo, ref))
