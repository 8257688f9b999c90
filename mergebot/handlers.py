"""Webhook event handlers.

Each handler resolves the pull requests an event affects, builds a fresh
snapshot per pull request, and hands it to the worker. Failures for one
pull request are logged and do not stop the others.
"""
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import redis

from .errors import MergebotError
from .fetcher import ConfigFetcher
from .github import GitHubClient
from .metrics import event_handler_errors_total
from .pull import GitHubPullContext
from .store import Store
from .worker import fetch_config, process_pull_request, update_pull_request

logger = logging.getLogger(__name__)

BRANCH_REF_PREFIX = "refs/heads/"

# Pacing between pull requests affected by a single push
PULL_QUERY_DELAY = 0.25
PULL_UPDATE_BASE_DELAY = 1.0
PULL_UPDATE_MAX_DELAY = 60.0
PULL_UPDATE_DELAY_MULT = 1.5


def pacing_delay(iteration: int, base: float, mult: float, max_delay: float) -> float:
    t = base
    for _ in range(iteration):
        t = mult * t
        if t > max_delay:
            return max_delay
    return t


def _repo_of(payload: Dict[str, Any]):
    repo = payload.get("repository") or {}
    return (repo.get("owner") or {}).get("login"), repo.get("name")


class EventHandlers:
    EVENTS = ("pull_request", "issue_comment", "pull_request_review", "status", "check_run", "check_suite", "push")

    def __init__(
        self,
        fetcher: Optional[ConfigFetcher] = None,
        client_factory: Callable[[int], Any] = GitHubClient,
        store: Optional[Store] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.fetcher = fetcher or ConfigFetcher(store=store)
        self.client_factory = client_factory
        self.sleep = sleep

    def handles(self, event: str) -> bool:
        return event in self.EVENTS

    def _throttled(self, installation_id: int) -> bool:
        if self.store is None:
            return False
        try:
            remaining = self.store.throttle_remaining(installation_id)
        except redis.RedisError:
            logger.warning("Could not read throttle for installation %s", installation_id, exc_info=True)
            return False
        if remaining > 0:
            logger.info(
                "Backpressure active; dropping event for installation=%s (%.0fs remaining)", installation_id, remaining
            )
            return True
        return False

    def handle(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.handles(event):
            logger.debug("Ignoring unsupported event %s", event)
            return
        installation_id = (payload.get("installation") or {}).get("id")
        owner, repo = _repo_of(payload)
        if not (installation_id and owner and repo):
            logger.debug("Ignoring %s event without installation or repository", event)
            return
        if self._throttled(int(installation_id)):
            return
        gh = self.client_factory(int(installation_id))
        try:
            getattr(self, f"on_{event}")(gh, owner, repo, payload)
        except (httpx.HTTPError, MergebotError):
            event_handler_errors_total.labels(event=event).inc()
            logger.exception("Failed to handle %s event for %s/%s", event, owner, repo)

    # --- Per pull request ---
    def _process(self, event: str, gh: Any, pr: Dict[str, Any]) -> None:
        pull_ctx = GitHubPullContext(gh, pr)
        try:
            config = fetch_config(self.fetcher, gh, pull_ctx.owner, pull_ctx.repo, pull_ctx.branches()[0])
            process_pull_request(gh, pull_ctx, config)
        except (httpx.HTTPError, MergebotError):
            event_handler_errors_total.labels(event=event).inc()
            logger.exception("Error processing pull request %s", pull_ctx.locator)

    def _process_numbers(self, event: str, gh: Any, owner: str, repo: str, numbers: List[int]) -> None:
        if not numbers:
            logger.debug("Doing nothing since %s event affects no open pull requests", event)
            return
        for number in numbers:
            # payloads carry slim pull request objects; fetch the full one
            pr = gh.get_pr(owner, repo, number)
            self._process(event, gh, pr)

    # --- Events ---
    def on_pull_request(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        if payload.get("action") == "closed":
            logger.debug("Doing nothing since pull request is closed")
            return
        number = (payload.get("pull_request") or {}).get("number") or payload.get("number")
        self._process_numbers("pull_request", gh, owner, repo, [int(number)] if number else [])

    def on_issue_comment(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        issue = payload.get("issue") or {}
        if not issue.get("pull_request"):
            logger.debug("Doing nothing since comment is on an issue")
            return
        if payload.get("action") not in ("created", "edited"):
            return
        self._process_numbers("issue_comment", gh, owner, repo, [int(issue["number"])])

    def on_pull_request_review(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        if payload.get("action") != "submitted":
            return
        number = (payload.get("pull_request") or {}).get("number")
        self._process_numbers("pull_request_review", gh, owner, repo, [int(number)] if number else [])

    def on_status(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        state = payload.get("state")
        if state != "success":
            logger.debug("Doing nothing since context state for %r was %r", payload.get("context"), state)
            return
        sha = payload.get("sha")
        if not sha:
            return
        prs = [pr for pr in gh.list_prs_for_commit(owner, repo, sha) if pr.get("state") == "open"]
        if not prs:
            logger.debug("Doing nothing since status change event affects no open pull requests")
            return
        for pr in prs:
            self._process("status", gh, pr)

    def _on_check(self, event: str, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        if payload.get("action") != "completed":
            logger.debug("Doing nothing since %s action was %r instead of 'completed'", event, payload.get("action"))
            return
        prs = (payload.get(event) or {}).get("pull_requests") or []
        self._process_numbers(event, gh, owner, repo, [int(pr["number"]) for pr in prs if pr.get("number")])

    def on_check_run(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        self._on_check("check_run", gh, owner, repo, payload)

    def on_check_suite(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        self._on_check("check_suite", gh, owner, repo, payload)

    def on_push(self, gh: Any, owner: str, repo: str, payload: Dict[str, Any]) -> None:
        ref = payload.get("ref") or ""
        if not ref.startswith(BRANCH_REF_PREFIX):
            logger.debug("Doing nothing since push to %s is not a branch", ref)
            return
        base_ref = ref[len(BRANCH_REF_PREFIX):]
        logger.debug("Received push event with base ref %s", base_ref)
        # the push may have changed the policy file on this branch
        self.fetcher.forget(owner, repo, base_ref)

        prs = gh.list_open_pulls(owner, repo, base=base_ref)
        if not prs:
            logger.debug("Doing nothing since push to %s affects no open pull requests", base_ref)
            return

        # every pull request targets the same ref, so one lookup covers them all
        config = fetch_config(self.fetcher, gh, owner, repo, base_ref)
        if config is None:
            logger.debug("Skipping pull request updates due to missing configuration")
            return

        updated = 0
        for i, pr in enumerate(prs):
            if i > 0:
                self.sleep(PULL_QUERY_DELAY)
            pull_ctx = GitHubPullContext(gh, pr)
            try:
                scheduled = update_pull_request(gh, pull_ctx, config, base_ref)
            except (httpx.HTTPError, MergebotError):
                event_handler_errors_total.labels(event="push").inc()
                logger.exception("Error determining if %s should update, skipping", pull_ctx.locator)
                continue
            if scheduled:
                updated += 1
                if i < len(prs) - 1:
                    d = pacing_delay(updated - 1, PULL_UPDATE_BASE_DELAY, PULL_UPDATE_DELAY_MULT, PULL_UPDATE_MAX_DELAY)
                    logger.debug("Waiting %ss until next update to avoid GitHub rate limits", d)
                    self.sleep(d)
        logger.info("Scheduled updates for %s of %s pull requests targeting %s", updated, len(prs), base_ref)
