import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

import httpx

from .errors import PullContextError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MergeState:
    closed: bool
    # None while GitHub is still computing mergeability
    mergeable: Optional[bool]


@dataclass(frozen=True)
class Commit:
    sha: str
    message: str


class PullContext(Protocol):
    """Read-only snapshot of a pull request used for a single evaluation.

    Collections that need extra API calls are fetched lazily and cached on
    the instance, so a snapshot must not be reused across evaluations.
    Fetch failures raise PullContextError.
    """

    owner: str
    repo: str
    number: int

    @property
    def locator(self) -> str: ...

    def title(self) -> str: ...

    def body(self) -> str: ...

    def head_sha(self) -> str: ...

    def branches(self) -> Tuple[str, str]:
        """Return (base, head). Fork heads are qualified as "<owner>:<branch>"."""
        ...

    def merge_state(self) -> MergeState: ...

    def required_statuses(self) -> List[str]: ...

    def push_restrictions(self) -> bool: ...

    def current_success_statuses(self) -> List[str]: ...

    def comments(self) -> List[str]: ...

    def commits(self) -> List[Commit]:
        """Commits ordered oldest to newest."""
        ...

    def labels(self) -> List[str]: ...

    def is_targeted(self) -> bool:
        """True if the head branch is the base branch of another open pull request."""
        ...

    def is_draft(self) -> bool: ...

    def is_auto_merge(self) -> bool: ...


def is_fork_head(head: str) -> bool:
    return ":" in head


class GitHubPullContext:
    def __init__(self, gh: Any, pr: Dict[str, Any]):
        self.gh = gh
        self.pr = pr
        base_repo = (pr.get("base") or {}).get("repo") or {}
        self.owner = (base_repo.get("owner") or {}).get("login", "")
        self.repo = base_repo.get("name", "")
        self.number = int(pr.get("number"))

        self._comments: Optional[List[str]] = None
        self._commits: Optional[List[Commit]] = None
        self._protection: Optional[Dict[str, Any]] = None
        self._success_statuses: Optional[List[str]] = None

    @property
    def locator(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    def __repr__(self) -> str:
        return f"GitHubPullContext({self.locator})"

    def title(self) -> str:
        return self.pr.get("title") or ""

    def body(self) -> str:
        return self.pr.get("body") or ""

    def head_sha(self) -> str:
        return (self.pr.get("head") or {}).get("sha", "")

    def branches(self) -> Tuple[str, str]:
        base = self.pr.get("base") or {}
        head = self.pr.get("head") or {}
        base_repo_id = (base.get("repo") or {}).get("id")
        head_repo_id = (head.get("repo") or {}).get("id")
        # use the label for forks to include the owner prefix
        if head_repo_id is not None and head_repo_id == base_repo_id:
            return base.get("ref", ""), head.get("ref", "")
        return base.get("ref", ""), head.get("label", "")

    def merge_state(self) -> MergeState:
        try:
            pr = self.gh.get_pr(self.owner, self.repo, self.number)
        except httpx.HTTPError as e:
            raise PullContextError(f"failed to get pull request merge state for {self.locator}") from e
        return MergeState(closed=pr.get("state") == "closed", mergeable=pr.get("mergeable"))

    def _branch_protection(self) -> Dict[str, Any]:
        if self._protection is None:
            base, _ = self.branches()
            try:
                self._protection = self.gh.get_branch_protection(self.owner, self.repo, base) or {}
            except httpx.HTTPError as e:
                raise PullContextError(f"cannot get branch protection for {self.locator}") from e
        return self._protection

    def required_statuses(self) -> List[str]:
        checks = self._branch_protection().get("required_status_checks") or {}
        return list(checks.get("contexts") or [])

    def push_restrictions(self) -> bool:
        restrictions = self._branch_protection().get("restrictions") or {}
        return bool(restrictions.get("users") or restrictions.get("teams"))

    def current_success_statuses(self) -> List[str]:
        if self._success_statuses is None:
            sha = self.head_sha()
            try:
                statuses = self.gh.list_commit_statuses(self.owner, self.repo, sha)
                check_runs = self.gh.list_check_runs(self.owner, self.repo, sha)
            except httpx.HTTPError as e:
                raise PullContextError(f"cannot get statuses for SHA {sha} on {self.locator}") from e
            success = [s.get("context") for s in statuses if s.get("state") == "success"]
            success.extend(c.get("name") for c in check_runs if c.get("conclusion") == "success")
            self._success_statuses = success
        return self._success_statuses

    def comments(self) -> List[str]:
        if self._comments is None:
            try:
                review = self.gh.list_pr_comments(self.owner, self.repo, self.number)
                issue = self.gh.list_issue_comments(self.owner, self.repo, self.number)
            except httpx.HTTPError as e:
                raise PullContextError(f"failed to list comments for {self.locator}") from e
            self._comments = [c.get("body") or "" for c in review + issue]
        return self._comments

    def commits(self) -> List[Commit]:
        if self._commits is None:
            try:
                raw = self.gh.list_pr_commits(self.owner, self.repo, self.number)
            except httpx.HTTPError as e:
                raise PullContextError(f"failed to list commits for {self.locator}") from e
            self._commits = [Commit(sha=c.get("sha", ""), message=(c.get("commit") or {}).get("message", "")) for c in raw]
        return self._commits

    def labels(self) -> List[str]:
        return [lbl.get("name", "") for lbl in self.pr.get("labels") or []]

    def is_targeted(self) -> bool:
        head_ref = (self.pr.get("head") or {}).get("ref", "")
        try:
            prs = self.gh.list_open_pulls(self.owner, self.repo, base=head_ref)
        except httpx.HTTPError as e:
            raise PullContextError(f"failed to determine targeted status for {self.locator}") from e
        return len(prs) > 0

    def is_draft(self) -> bool:
        return bool(self.pr.get("draft"))

    def is_auto_merge(self) -> bool:
        return self.pr.get("auto_merge") is not None
