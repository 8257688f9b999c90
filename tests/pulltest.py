from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from mergebot.errors import PullContextError
from mergebot.pull import Commit, MergeState


def _check(err: Optional[Exception]) -> None:
    if err is not None:
        raise err


@dataclass
class MockPullContext:
    """In-memory PullContext. Set any *_err field to make that accessor raise it."""

    owner: str = "pulltest"
    repo: str = "context"
    number: int = 1

    title_value: str = ""
    title_err: Optional[Exception] = None
    body_value: str = ""
    body_err: Optional[Exception] = None
    label_value: List[str] = field(default_factory=list)
    label_err: Optional[Exception] = None
    comment_value: List[str] = field(default_factory=list)
    comment_err: Optional[Exception] = None
    commits_value: List[Commit] = field(default_factory=list)
    commits_err: Optional[Exception] = None
    required_statuses_value: List[str] = field(default_factory=list)
    required_statuses_err: Optional[Exception] = None
    success_statuses_value: List[str] = field(default_factory=list)
    success_statuses_err: Optional[Exception] = None
    push_restrictions_value: bool = False
    branch_base: str = "develop"
    branch_name: str = "feature"
    head_sha_value: str = "abc123"
    targeted_value: bool = False
    targeted_err: Optional[Exception] = None
    draft_value: bool = False
    auto_merge_value: bool = False

    # consumed one per merge_state() call; the last entry repeats
    merge_states: List[object] = field(default_factory=lambda: [MergeState(closed=False, mergeable=True)])
    merge_state_calls: int = 0

    @property
    def locator(self) -> str:
        return f"{self.owner}/{self.repo}#{self.number}"

    def title(self) -> str:
        _check(self.title_err)
        return self.title_value

    def body(self) -> str:
        _check(self.body_err)
        return self.body_value

    def head_sha(self) -> str:
        return self.head_sha_value

    def branches(self) -> Tuple[str, str]:
        return self.branch_base, self.branch_name

    def merge_state(self) -> MergeState:
        idx = min(self.merge_state_calls, len(self.merge_states) - 1)
        self.merge_state_calls += 1
        state = self.merge_states[idx]
        if isinstance(state, Exception):
            raise state
        return state

    def required_statuses(self) -> List[str]:
        _check(self.required_statuses_err)
        return self.required_statuses_value

    def push_restrictions(self) -> bool:
        return self.push_restrictions_value

    def current_success_statuses(self) -> List[str]:
        _check(self.success_statuses_err)
        return self.success_statuses_value

    def comments(self) -> List[str]:
        _check(self.comment_err)
        return self.comment_value

    def commits(self) -> List[Commit]:
        _check(self.commits_err)
        return self.commits_value

    def labels(self) -> List[str]:
        _check(self.label_err)
        return self.label_value

    def is_targeted(self) -> bool:
        _check(self.targeted_err)
        return self.targeted_value

    def is_draft(self) -> bool:
        return self.draft_value

    def is_auto_merge(self) -> bool:
        return self.auto_merge_value


def fetch_error(what: str = "snapshot") -> PullContextError:
    return PullContextError(f"failed to fetch {what}")
