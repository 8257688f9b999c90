import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import httpx

from .errors import MergebotError, PullContextError
from .metrics import update_outcomes_total
from .pull import PullContext, is_fork_head
from .runner import PollSettings, spawn

logger = logging.getLogger(__name__)


class Updater(Protocol):
    def behind_by(self, pull_ctx: PullContext, base_ref: str) -> int:
        """Number of commits on base_ref missing from the head branch."""
        ...

    def merge_forward(self, pull_ctx: PullContext, base_ref: str) -> Optional[str]:
        """Merge base_ref into the head branch, returning the merge SHA if one was created."""
        ...


class GitHubUpdater:
    def __init__(self, gh: Any):
        self.gh = gh

    def behind_by(self, pull_ctx: PullContext, base_ref: str) -> int:
        _, head = pull_ctx.branches()
        comparison = self.gh.compare_commits(pull_ctx.owner, pull_ctx.repo, base_ref, head)
        return int(comparison.get("behind_by") or 0)

    def merge_forward(self, pull_ctx: PullContext, base_ref: str) -> Optional[str]:
        _, head = pull_ctx.branches()
        result = self.gh.merge_branches(pull_ctx.owner, pull_ctx.repo, base=head, head=base_ref)
        if result is None:
            return None
        return result.get("sha")


class UpdateOutcome(str, Enum):
    UPDATED = "updated"
    UP_TO_DATE = "up_to_date"
    CLOSED = "closed"
    CONFLICT = "conflict"
    GAVE_UP = "gave_up"


def _finish(pull_ctx: PullContext, outcome: UpdateOutcome) -> UpdateOutcome:
    update_outcomes_total.labels(outcome=outcome.value).inc()
    logger.debug("Update loop for %s finished outcome=%s", pull_ctx.locator, outcome.value)
    return outcome


def run_update_loop(
    pull_ctx: PullContext,
    updater: Updater,
    base_ref: str,
    poll: PollSettings,
    sleep: Callable[[float], None] = time.sleep,
) -> UpdateOutcome:
    """Bring the head branch up to date with base_ref.

    Fetch, compare and merge failures are treated as transient and retried
    within the attempt bound. A 409 from the merge is a conflict that
    retrying will not fix.
    """
    for attempt in range(1, poll.max_attempts + 1):
        sleep(poll.delay)

        try:
            state = pull_ctx.merge_state()
        except PullContextError:
            logger.warning("Failed to retrieve %s attempt=%s", pull_ctx.locator, attempt, exc_info=True)
            continue
        if state.closed:
            logger.debug("%s is already closed", pull_ctx.locator)
            return _finish(pull_ctx, UpdateOutcome.CLOSED)

        try:
            behind = updater.behind_by(pull_ctx, base_ref)
        except (httpx.HTTPError, MergebotError):
            logger.warning("Cannot compare %s with %s attempt=%s", base_ref, pull_ctx.locator, attempt, exc_info=True)
            continue
        if behind <= 0:
            logger.debug("%s is not out of date with %s, not updating", pull_ctx.locator, base_ref)
            return _finish(pull_ctx, UpdateOutcome.UP_TO_DATE)

        logger.debug("%s is %s commits behind %s", pull_ctx.locator, behind, base_ref)
        try:
            sha = updater.merge_forward(pull_ctx, base_ref)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 409:
                logger.info("Cannot update %s from %s due to a merge conflict", pull_ctx.locator, base_ref)
                return _finish(pull_ctx, UpdateOutcome.CONFLICT)
            logger.error("Update of %s failed unexpectedly status=%s", pull_ctx.locator, e.response.status_code)
            continue
        except (httpx.HTTPError, MergebotError):
            logger.error("Update of %s failed unexpectedly", pull_ctx.locator, exc_info=True)
            continue

        logger.info("Updated %s from %s as merge %s", pull_ctx.locator, base_ref, sha)
        return _finish(pull_ctx, UpdateOutcome.UPDATED)

    logger.info("Gave up updating %s after %s attempts", pull_ctx.locator, poll.max_attempts)
    return _finish(pull_ctx, UpdateOutcome.GAVE_UP)


def update_pr(
    pull_ctx: PullContext,
    updater: Updater,
    base_ref: str,
    poll: Optional[PollSettings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[threading.Thread]:
    """Schedule an update of the pull request from base_ref. Fork heads cannot be updated and return None."""
    _, head = pull_ctx.branches()
    if is_fork_head(head):
        logger.debug("%s is from a fork, cannot keep it up to date with %s", pull_ctx.locator, base_ref)
        return None

    poll = poll or PollSettings.for_update()
    return spawn(
        lambda: run_update_loop(pull_ctx, updater, base_ref, poll, sleep),
        name=f"update-{pull_ctx.locator}",
        kind="update",
    )
