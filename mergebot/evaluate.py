import logging
from typing import Dict, Iterable, List, Tuple

from .errors import EvaluationError, PullContextError
from .metrics import evaluations_total
from .models import MergeConfig, UpdateConfig
from .pull import PullContext
from .signals import Signals

logger = logging.getLogger(__name__)

# Required statuses that CI providers report under a different name
# depending on the event that triggered the build.
STATUS_ALIASES: Dict[str, Tuple[str, ...]] = {
    "continuous-integration/travis-ci": (
        "continuous-integration/travis-ci/push",
        "continuous-integration/travis-ci/pr",
    ),
}


def set_difference(required: Iterable[str], success: Iterable[str]) -> List[str]:
    """Return the required statuses that are not satisfied, de-duplicated, in order."""
    satisfied = set(success)
    seen = set()
    result = []
    for status in required:
        if status in seen:
            continue
        seen.add(status)
        if status in satisfied:
            continue
        if any(alias in satisfied for alias in STATUS_ALIASES.get(status, ())):
            continue
        result.append(status)
    return result


def _is_ignored(pull_ctx: PullContext, ignore: Signals, action: str) -> bool:
    if not ignore.enabled():
        return False
    try:
        ignored, reason = ignore.matches_any(pull_ctx, "ignore")
    except PullContextError as e:
        raise EvaluationError("failed to determine if pull request is ignored") from e
    if ignored:
        logger.debug("%s is deemed not %s because ignoring is enabled and %s", pull_ctx.locator, action, reason)
    return ignored


def _is_triggered(pull_ctx: PullContext, trigger: Signals, action: str) -> bool:
    if not trigger.enabled():
        return True
    try:
        triggered, reason = trigger.matches_any(pull_ctx, "trigger")
    except PullContextError as e:
        raise EvaluationError("failed to determine if pull request is triggered") from e
    if triggered:
        logger.debug("%s is triggered because triggering is enabled and %s", pull_ctx.locator, reason)
    else:
        logger.debug("%s is deemed not %s because triggering is enabled and %s", pull_ctx.locator, action, reason)
    return triggered


def should_merge_pr(pull_ctx: PullContext, merge_config: MergeConfig) -> bool:
    """Decide whether a pull request should be merged.

    Review requirements are not checked here; the merge is attempted and
    GitHub rejects it when reviews are missing. Any failure to read the pull
    request raises EvaluationError, which callers treat as "do not merge".
    """
    if _is_ignored(pull_ctx, merge_config.ignore, "mergeable"):
        evaluations_total.labels(action="merge", result="ignored").inc()
        return False
    if not _is_triggered(pull_ctx, merge_config.trigger, "mergeable"):
        evaluations_total.labels(action="merge", result="not_triggered").inc()
        return False

    try:
        required = list(pull_ctx.required_statuses()) + list(merge_config.required_statuses)
        success = pull_ctx.current_success_statuses()
    except PullContextError as e:
        raise EvaluationError("failed to determine status checks") from e

    unsatisfied = set_difference(required, success)
    if unsatisfied:
        logger.debug(
            "%s is deemed not mergeable because of unfulfilled status checks: [%s]",
            pull_ctx.locator,
            ",".join(unsatisfied),
        )
        evaluations_total.labels(action="merge", result="checks_pending").inc()
        return False

    if not required and not success and not merge_config.allow_merge_with_no_checks:
        logger.debug("%s is deemed not mergeable because it has no status checks", pull_ctx.locator)
        evaluations_total.labels(action="merge", result="no_checks").inc()
        return False

    evaluations_total.labels(action="merge", result="accepted").inc()
    return True


def should_update_pr(pull_ctx: PullContext, update_config: UpdateConfig) -> bool:
    """Decide whether a pull request should be brought up to date with its base.

    Updates are opt-in: without trigger or ignore signals nothing is updated.
    """
    if not update_config.ignore.enabled() and not update_config.trigger.enabled():
        evaluations_total.labels(action="update", result="not_configured").inc()
        return False

    if update_config.ignore_drafts is True and pull_ctx.is_draft():
        logger.debug("%s is deemed not updateable because it is a draft and drafts are ignored", pull_ctx.locator)
        evaluations_total.labels(action="update", result="draft").inc()
        return False

    if _is_ignored(pull_ctx, update_config.ignore, "updateable"):
        evaluations_total.labels(action="update", result="ignored").inc()
        return False
    if not _is_triggered(pull_ctx, update_config.trigger, "updateable"):
        evaluations_total.labels(action="update", result="not_triggered").inc()
        return False

    if update_config.required_statuses:
        try:
            success = pull_ctx.current_success_statuses()
        except PullContextError as e:
            raise EvaluationError("failed to determine currently successful status checks") from e
        unsatisfied = set_difference(update_config.required_statuses, success)
        if unsatisfied:
            logger.debug(
                "%s is deemed not updateable because of unfulfilled status checks: [%s]",
                pull_ctx.locator,
                ",".join(unsatisfied),
            )
            evaluations_total.labels(action="update", result="checks_pending").inc()
            return False

    evaluations_total.labels(action="update", result="accepted").inc()
    return True
