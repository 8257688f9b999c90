import logging
import re
from enum import Enum
from typing import Any, Callable, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, model_validator

from .pull import PullContext

logger = logging.getLogger(__name__)

Match = Tuple[bool, str]
NO_MATCH: Match = (False, "")


class SignalKind(str, Enum):
    LABELS = "labels"
    COMMENT_SUBSTRINGS = "comment_substrings"
    COMMENTS = "comments"
    PR_BODY_SUBSTRINGS = "pr_body_substrings"
    BRANCHES = "branches"
    BRANCH_PATTERNS = "branch_patterns"
    MAX_COMMITS = "max_commits"
    AUTO_MERGE = "auto_merge"
    DRAFT = "draft"


# Evaluation order for matches_any. Max commits is only a constraint, never a trigger on its own.
ANY_ORDER = (
    SignalKind.LABELS,
    SignalKind.COMMENT_SUBSTRINGS,
    SignalKind.COMMENTS,
    SignalKind.PR_BODY_SUBSTRINGS,
    SignalKind.BRANCHES,
    SignalKind.BRANCH_PATTERNS,
    SignalKind.AUTO_MERGE,
    SignalKind.DRAFT,
)
ALL_ORDER = ANY_ORDER + (SignalKind.MAX_COMMITS,)


def drop_null_fields(data: Any) -> Any:
    """Drop keys left empty in YAML (``key:``) so the field default applies."""
    if isinstance(data, dict):
        return {k: v for k, v in data.items() if v is not None}
    return data


class Signals(BaseModel):
    """A set of signals for one role, e.g. the merge trigger or the update ignore set."""

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def empty_keys_use_defaults(cls, data: Any) -> Any:
        return drop_null_fields(data)

    labels: List[str] = []
    comment_substrings: List[str] = []
    comments: List[str] = []
    pr_body_substrings: List[str] = []
    branches: List[str] = []
    branch_patterns: List[str] = []
    max_commits: int = 0
    auto_merge: bool = False
    draft: bool = False

    def enabled(self) -> bool:
        return any(signal_enabled(self, kind) for kind in SignalKind)

    def matches_any(self, pull_ctx: PullContext, tag: str) -> Match:
        """Return (True, reason) for the first signal kind the pull request matches.

        Errors from the pull request snapshot propagate unchanged.
        """
        if not self.enabled():
            return False, f"no {tag} signals provided to match against"
        for kind in ANY_ORDER:
            matched, reason = match_signal(kind, self, pull_ctx, tag)
            if matched:
                return True, reason
        return False, f"pull request does not match the {tag}"

    def matches_all(self, pull_ctx: PullContext, tag: str) -> Match:
        """Return (True, reason) if the pull request matches every enabled signal kind."""
        if not self.enabled():
            return False, f"no {tag} signals provided to match against"
        for kind in ALL_ORDER:
            if not signal_enabled(self, kind):
                continue
            matched, _ = match_signal(kind, self, pull_ctx, tag)
            if not matched:
                logger.debug("%s does not match %s signal %s", pull_ctx.locator, tag, kind.value)
                return False, f"pull request does not match all {tag} signals"
        return True, f"pull request matches all {tag} signals"


def signal_enabled(signals: Signals, kind: SignalKind) -> bool:
    value = getattr(signals, kind.value)
    if kind is SignalKind.MAX_COMMITS:
        return value > 0
    return bool(value)


def match_signal(kind: SignalKind, signals: Signals, pull_ctx: PullContext, tag: str) -> Match:
    if not signal_enabled(signals, kind):
        return NO_MATCH
    return _MATCHERS[kind](getattr(signals, kind.value), pull_ctx, tag)


def _match_labels(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    labels = [lbl.lower() for lbl in pull_ctx.labels()]
    if not labels:
        return NO_MATCH
    for value in values:
        if value.lower() in labels:
            return True, f'pull request has a {tag} label: "{value}"'
    return NO_MATCH


def _match_comments(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    body = pull_ctx.body()
    comments = pull_ctx.comments()
    for value in values:
        if body == value:
            return True, f'pull request body is a {tag} comment: "{value}"'
        if value in comments:
            return True, f'pull request has a {tag} comment: "{value}"'
    return NO_MATCH


def _match_comment_substrings(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    body = pull_ctx.body()
    comments = pull_ctx.comments()
    for value in values:
        if value in body:
            return True, f'pull request body matches a {tag} substring: "{value}"'
        if any(value in comment for comment in comments):
            return True, f'pull request comment matches a {tag} substring: "{value}"'
    return NO_MATCH


def _match_pr_body_substrings(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    body = pull_ctx.body()
    if not body:
        return NO_MATCH
    for value in values:
        if value in body:
            return True, f'pull request body matches a {tag} substring: "{value}"'
    return NO_MATCH


def _match_branches(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    target, _ = pull_ctx.branches()
    for value in values:
        if target == value:
            return True, f'pull request target is a {tag} branch: "{value}"'
    return NO_MATCH


def _match_branch_patterns(values: List[str], pull_ctx: PullContext, tag: str) -> Match:
    target, _ = pull_ctx.branches()
    for pattern in values:
        try:
            matched = re.fullmatch(pattern, target) is not None
        except re.error:
            logger.warning("Invalid %s branch pattern %r for %s", tag, pattern, pull_ctx.locator)
            continue
        if matched:
            return True, f'pull request target branch ("{target}") matches {tag} pattern: "{pattern}"'
    return NO_MATCH


def _match_max_commits(value: int, pull_ctx: PullContext, tag: str) -> Match:
    count = len(pull_ctx.commits())
    if count <= value:
        return True, f"pull request has {count} commits, which is at or below the {tag} maximum of {value}"
    return NO_MATCH


def _match_auto_merge(value: bool, pull_ctx: PullContext, tag: str) -> Match:
    if pull_ctx.is_auto_merge():
        return True, f"pull request has auto-merge enabled, which is a {tag} signal"
    return NO_MATCH


def _match_draft(value: bool, pull_ctx: PullContext, tag: str) -> Match:
    if pull_ctx.is_draft():
        return True, f"pull request is a draft, which is a {tag} signal"
    return NO_MATCH


_MATCHERS: Dict[SignalKind, Callable[..., Match]] = {
    SignalKind.LABELS: _match_labels,
    SignalKind.COMMENTS: _match_comments,
    SignalKind.COMMENT_SUBSTRINGS: _match_comment_substrings,
    SignalKind.PR_BODY_SUBSTRINGS: _match_pr_body_substrings,
    SignalKind.BRANCHES: _match_branches,
    SignalKind.BRANCH_PATTERNS: _match_branch_patterns,
    SignalKind.MAX_COMMITS: _match_max_commits,
    SignalKind.AUTO_MERGE: _match_auto_merge,
    SignalKind.DRAFT: _match_draft,
}
