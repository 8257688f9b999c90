import logging
from typing import Optional

from .config import SETTINGS
from .evaluate import should_merge_pr, should_update_pr
from .fetcher import ConfigFetcher
from .github import GitHubClient
from .merge import GitHubMerger, Merger, PushRestrictionMerger, merge_pr
from .models import RepoConfig
from .pull import PullContext
from .runner import PollSettings
from .update import GitHubUpdater, update_pr

logger = logging.getLogger(__name__)


def fetch_config(fetcher: ConfigFetcher, gh: GitHubClient, owner: str, repo: str, ref: str) -> Optional[RepoConfig]:
    """Return the policy for a ref, or None when it is missing or invalid."""
    fc = fetcher.config_for_ref(gh, owner, repo, ref)
    if fc.missing:
        logger.debug("No configuration found for %s", fc)
        return None
    if fc.invalid:
        logger.warning("Configuration is invalid for %s path=%s: %s", fc, fc.path, fc.error)
        return None
    logger.debug("Found valid configuration for %s", fc)
    return fc.config


def merger_for(gh: GitHubClient) -> Merger:
    merger: Merger = GitHubMerger(gh)
    if SETTINGS.push_restriction_user_token:
        token_client = GitHubClient.for_token(gh.installation_id, SETTINGS.push_restriction_user_token)
        merger = PushRestrictionMerger(merger, GitHubMerger(token_client))
    return merger


def process_pull_request(
    gh: GitHubClient,
    pull_ctx: PullContext,
    config: Optional[RepoConfig],
    poll: Optional[PollSettings] = None,
) -> bool:
    """Merge the pull request if its policy says so. Returns True when a merge was scheduled.

    EvaluationError propagates; the caller must not act on the pull request then.
    """
    if config is None:
        logger.debug("Skipping %s: no usable configuration", pull_ctx.locator)
        return False

    merger = merger_for(gh)
    if not should_merge_pr(pull_ctx, config.merge):
        return False
    merge_pr(pull_ctx, merger, config.merge, poll)
    return True


def update_pull_request(
    gh: GitHubClient,
    pull_ctx: PullContext,
    config: Optional[RepoConfig],
    base_ref: str,
    poll: Optional[PollSettings] = None,
) -> bool:
    """Update the pull request from base_ref if its policy says so. Returns True when an update was scheduled."""
    if config is None:
        logger.debug("Skipping update of %s: no usable configuration", pull_ctx.locator)
        return False
    if SETTINGS.disable_update_feature:
        logger.debug("Skipping update of %s: updates are disabled", pull_ctx.locator)
        return False

    if not should_update_pr(pull_ctx, config.update):
        return False
    return update_pr(pull_ctx, GitHubUpdater(gh), base_ref, poll) is not None
