import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .config import SETTINGS
from .metrics import background_tasks_active

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_DELAY_SECONDS = 2.0


@dataclass(frozen=True)
class PollSettings:
    """Bounds for a merge or update poll loop: attempts, and seconds slept before each one."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    delay: float = DEFAULT_DELAY_SECONDS

    @classmethod
    def for_merge(cls) -> "PollSettings":
        return cls(max_attempts=SETTINGS.poll_max_attempts, delay=SETTINGS.merge_poll_delay_seconds)

    @classmethod
    def for_update(cls) -> "PollSettings":
        return cls(max_attempts=SETTINGS.poll_max_attempts, delay=SETTINGS.update_poll_delay_seconds)


def spawn(target: Callable[[], None], name: str, kind: str) -> threading.Thread:
    """Run target on a daemon thread that outlives the calling request.

    Nothing is returned to the caller; failures inside target are logged here.
    """

    def run() -> None:
        background_tasks_active.labels(kind=kind).inc()
        try:
            target()
        except Exception:
            logger.exception("Background %s task %s failed", kind, name)
        finally:
            background_tasks_active.labels(kind=kind).dec()

    thread = threading.Thread(target=run, name=name, daemon=True)
    thread.start()
    logger.debug("Started background %s task %s", kind, name)
    return thread
