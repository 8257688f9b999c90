"""Merge execution for a single pull request.

``merge_pr`` resolves the merge method and squash commit text up front, then
hands a bounded poll loop to a background thread. The loop waits for GitHub to
compute mergeability, attempts the merge, and classifies failures: 405 and 409
responses end the loop, anything else is retried until the attempts run out.
"""
import logging
import re
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import httpx

from .errors import MergebotError, PullContextError
from .metrics import branch_deletions_total, merge_attempts_total, merge_outcomes_total
from .models import BodyStrategy, MergeConfig, MergeMethod, SquashOptions, TitleStrategy
from .pull import PullContext, is_fork_head
from .runner import PollSettings, spawn

logger = logging.getLogger(__name__)

# Sent as the commit message when the body must be empty. An empty string
# would let GitHub fill in its default message instead.
EMPTY_COMMIT_MESSAGE = " "


@dataclass(frozen=True)
class MergeOptions:
    # Empty values defer to GitHub's defaults
    title: str = ""
    message: str = ""


class Merger(Protocol):
    def merge(self, pull_ctx: PullContext, method: MergeMethod, options: MergeOptions) -> str:
        """Merge the pull request and return the resulting SHA.

        Raises httpx.HTTPStatusError when GitHub rejects the merge.
        """
        ...

    def delete_head(self, pull_ctx: PullContext) -> None: ...


class GitHubMerger:
    def __init__(self, gh: Any):
        self.gh = gh

    def merge(self, pull_ctx: PullContext, method: MergeMethod, options: MergeOptions) -> str:
        if method == MergeMethod.FF_ONLY:
            # fast-forward the base ref; GitHub refuses non fast-forward updates
            base, _ = pull_ctx.branches()
            sha = pull_ctx.head_sha()
            self.gh.update_ref(pull_ctx.owner, pull_ctx.repo, base, sha, force=False)
            return sha
        result = self.gh.merge_pr(
            pull_ctx.owner, pull_ctx.repo, pull_ctx.number, method.value, options.title, options.message
        )
        return result.get("sha", "")

    def delete_head(self, pull_ctx: PullContext) -> None:
        _, head = pull_ctx.branches()
        self.gh.delete_ref(pull_ctx.owner, pull_ctx.repo, head)


class PushRestrictionMerger:
    """Use a separate credential for base branches with push restrictions."""

    def __init__(self, normal: Merger, restricted: Merger):
        self.normal = normal
        self.restricted = restricted

    def _select(self, pull_ctx: PullContext) -> Merger:
        if pull_ctx.push_restrictions():
            logger.debug("%s targets a branch with push restrictions; using restricted merger", pull_ctx.locator)
            return self.restricted
        return self.normal

    def merge(self, pull_ctx: PullContext, method: MergeMethod, options: MergeOptions) -> str:
        return self._select(pull_ctx).merge(pull_ctx, method, options)

    def delete_head(self, pull_ctx: PullContext) -> None:
        self._select(pull_ctx).delete_head(pull_ctx)


class MergeOutcome(str, Enum):
    MERGED = "merged"
    CLOSED = "closed"
    NOT_MERGEABLE = "not_mergeable"
    REJECTED_CONDITION = "rejected_condition"
    REJECTED_INVALID = "rejected_invalid"
    GAVE_UP = "gave_up"


def resolve_merge_method(merge_config: MergeConfig, base: str) -> MergeMethod:
    method = merge_config.branch_method.get(base, merge_config.method)
    try:
        return MergeMethod(method)
    except ValueError:
        logger.info("Unknown merge method %r for branch %s; using %s", method, base, MergeMethod.MERGE.value)
        return MergeMethod.MERGE


def squash_options(merge_config: MergeConfig) -> SquashOptions:
    opt = merge_config.options.squash
    if opt is None:
        logger.info("No squash options defined; using defaults")
        opt = SquashOptions()
    return opt.model_copy(
        update={
            "title": opt.title or TitleStrategy.PULL_REQUEST_TITLE.value,
            "body": opt.body or BodyStrategy.EMPTY_BODY.value,
        }
    )


def calculate_commit_title(pull_ctx: PullContext, opt: SquashOptions) -> str:
    title = ""
    if opt.title == TitleStrategy.PULL_REQUEST_TITLE.value:
        title = pull_ctx.title()
    elif opt.title == TitleStrategy.FIRST_COMMIT_TITLE.value:
        commits = pull_ctx.commits()
        if commits:
            title = commits[0].message.split("\n", 1)[0]
    if title:
        title = f"{title} (#{pull_ctx.number})"
    return title


def summarize_commit_messages(pull_ctx: PullContext) -> str:
    return "".join(f"* {c.message}\n" for c in pull_ctx.commits())


def calculate_commit_message(pull_ctx: PullContext, opt: SquashOptions) -> str:
    if opt.body == BodyStrategy.PULL_REQUEST_BODY.value:
        body = pull_ctx.body()
        if not opt.message_delimiter:
            return body
        delim = re.escape(opt.message_delimiter)
        m = re.search(rf"({delim}\s*)^(.*)$(\s*{delim})", body, re.DOTALL | re.MULTILINE)
        if m is None:
            logger.debug("%s body has no %r delimited message", pull_ctx.locator, opt.message_delimiter)
            return EMPTY_COMMIT_MESSAGE
        return m.group(2)
    if opt.body == BodyStrategy.SUMMARIZE_COMMITS.value:
        return summarize_commit_messages(pull_ctx)
    if opt.body == BodyStrategy.EMPTY_BODY.value:
        return EMPTY_COMMIT_MESSAGE
    return ""


def _api_message(err: httpx.HTTPStatusError) -> str:
    try:
        data = err.response.json()
    except ValueError:
        return err.response.text
    if isinstance(data, dict):
        return str(data.get("message", ""))
    return ""


def delete_head_branch(pull_ctx: PullContext, merger: Merger) -> bool:
    """Delete the merged head branch unless it is a fork or still a base elsewhere. Never raises."""
    _, head = pull_ctx.branches()
    if is_fork_head(head):
        logger.debug("%s is from a fork, not deleting %s", pull_ctx.locator, head)
        branch_deletions_total.labels(result="skipped_fork").inc()
        return False
    try:
        targeted = pull_ctx.is_targeted()
    except PullContextError:
        logger.error("Unable to list open pull requests against %s for %s", head, pull_ctx.locator, exc_info=True)
        branch_deletions_total.labels(result="error").inc()
        return False
    if targeted:
        logger.info(
            "Not deleting %s after merging %s because there are open pull requests against it", head, pull_ctx.locator
        )
        branch_deletions_total.labels(result="skipped_targeted").inc()
        return False
    try:
        merger.delete_head(pull_ctx)
    except (httpx.HTTPError, MergebotError):
        logger.error("Failed to delete %s on %s", head, pull_ctx.locator, exc_info=True)
        branch_deletions_total.labels(result="error").inc()
        return False
    logger.info("Deleted %s on %s", head, pull_ctx.locator)
    branch_deletions_total.labels(result="deleted").inc()
    return True


def _finish(pull_ctx: PullContext, outcome: MergeOutcome) -> MergeOutcome:
    merge_outcomes_total.labels(outcome=outcome.value).inc()
    logger.debug("Merge loop for %s finished outcome=%s", pull_ctx.locator, outcome.value)
    return outcome


def run_merge_loop(
    pull_ctx: PullContext,
    merger: Merger,
    method: MergeMethod,
    options: MergeOptions,
    merge_config: MergeConfig,
    poll: PollSettings,
    sleep: Callable[[float], None] = time.sleep,
) -> MergeOutcome:
    for attempt in range(1, poll.max_attempts + 1):
        sleep(poll.delay)

        try:
            state = pull_ctx.merge_state()
        except PullContextError:
            logger.warning("Failed to retrieve %s attempt=%s", pull_ctx.locator, attempt, exc_info=True)
            continue

        if state.closed:
            logger.debug("%s is already closed", pull_ctx.locator)
            return _finish(pull_ctx, MergeOutcome.CLOSED)
        if state.mergeable is None:
            logger.debug("%s mergeability not yet known attempt=%s", pull_ctx.locator, attempt)
            continue
        if not state.mergeable:
            logger.debug("%s is not mergeable", pull_ctx.locator)
            return _finish(pull_ctx, MergeOutcome.NOT_MERGEABLE)

        logger.info("Attempting to merge %s with method %s attempt=%s", pull_ctx.locator, method.value, attempt)
        try:
            sha = merger.merge(pull_ctx, method, options)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            merge_attempts_total.labels(method=method.value, result=str(status)).inc()
            if status == 405:
                logger.info("Merge of %s rejected due to unsatisfied condition %r", pull_ctx.locator, _api_message(e))
                return _finish(pull_ctx, MergeOutcome.REJECTED_CONDITION)
            if status == 409:
                logger.info("Merge of %s rejected due to being invalid %r", pull_ctx.locator, _api_message(e))
                return _finish(pull_ctx, MergeOutcome.REJECTED_INVALID)
            logger.error("Merge of %s failed unexpectedly status=%s %r", pull_ctx.locator, status, _api_message(e))
            continue
        except (httpx.HTTPError, MergebotError):
            merge_attempts_total.labels(method=method.value, result="error").inc()
            logger.error("Merge of %s failed unexpectedly", pull_ctx.locator, exc_info=True)
            continue

        merge_attempts_total.labels(method=method.value, result="success").inc()
        logger.info("Merged %s as %s", pull_ctx.locator, sha)
        if merge_config.delete_after_merge:
            delete_head_branch(pull_ctx, merger)
        return _finish(pull_ctx, MergeOutcome.MERGED)

    logger.info("Gave up merging %s after %s attempts", pull_ctx.locator, poll.max_attempts)
    return _finish(pull_ctx, MergeOutcome.GAVE_UP)


def merge_pr(
    pull_ctx: PullContext,
    merger: Merger,
    merge_config: MergeConfig,
    poll: Optional[PollSettings] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> threading.Thread:
    """Schedule the merge of a pull request already judged mergeable.

    Errors computing the squash commit text are raised here. Everything after
    scheduling is only observable through logs and metrics.
    """
    base, _ = pull_ctx.branches()
    method = resolve_merge_method(merge_config, base)

    options = MergeOptions()
    if method == MergeMethod.SQUASH:
        opt = squash_options(merge_config)
        options = MergeOptions(
            title=calculate_commit_title(pull_ctx, opt),
            message=calculate_commit_message(pull_ctx, opt),
        )

    poll = poll or PollSettings.for_merge()
    return spawn(
        lambda: run_merge_loop(pull_ctx, merger, method, options, merge_config, poll, sleep),
        name=f"merge-{pull_ctx.locator}",
        kind="merge",
    )
