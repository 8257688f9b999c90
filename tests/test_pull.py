import httpx
import pytest

from mergebot.errors import PullContextError
from mergebot.pull import GitHubPullContext, MergeState, is_fork_head

SHA = "4c0ffee"


def pr_payload(**overrides):
    base_repo = {"id": 1, "name": "widgets", "owner": {"login": "octo"}}
    pr = {
        "number": 12,
        "state": "open",
        "mergeable": None,
        "title": "Tidy up",
        "body": None,
        "draft": False,
        "auto_merge": None,
        "labels": [{"name": "merge when ready"}, {"name": "docs"}],
        "base": {"ref": "main", "repo": base_repo},
        "head": {"ref": "tidy", "sha": SHA, "label": "octo:tidy", "repo": base_repo},
    }
    pr.update(overrides)
    return pr


class FakeGH:
    def __init__(self, error=None):
        self.error = error
        self.calls = []
        self.pr_state = {"state": "open", "mergeable": True}
        self.protection = {
            "required_status_checks": {"contexts": ["build", "lint"]},
            "restrictions": {"users": [{"login": "release-bot"}], "teams": []},
        }
        self.statuses = [
            {"context": "build", "state": "success"},
            {"context": "deploy", "state": "pending"},
            {"context": "docs", "state": "failure"},
        ]
        self.check_runs = [
            {"name": "lint", "conclusion": "success"},
            {"name": "fuzz", "conclusion": None},
            {"name": "bench", "conclusion": "neutral"},
        ]
        self.open_pulls = []

    def _record(self, *call):
        self.calls.append(call)
        if self.error is not None:
            raise self.error

    def get_pr(self, owner, repo, number):
        self._record("get_pr", owner, repo, number)
        return self.pr_state

    def get_branch_protection(self, owner, repo, branch):
        self._record("get_branch_protection", branch)
        return self.protection

    def list_commit_statuses(self, owner, repo, sha):
        self._record("list_commit_statuses", sha)
        return self.statuses

    def list_check_runs(self, owner, repo, sha):
        self._record("list_check_runs", sha)
        return self.check_runs

    def list_pr_comments(self, owner, repo, number):
        self._record("list_pr_comments", number)
        return [{"body": "nit: rename"}]

    def list_issue_comments(self, owner, repo, number):
        self._record("list_issue_comments", number)
        return [{"body": "LGTM"}, {"body": None}]

    def list_pr_commits(self, owner, repo, number):
        self._record("list_pr_commits", number)
        return [
            {"sha": "a1", "commit": {"message": "first\n\ndetails"}},
            {"sha": "b2", "commit": {"message": "second"}},
        ]

    def list_open_pulls(self, owner, repo, base=None):
        self._record("list_open_pulls", base)
        return self.open_pulls


def test_identity_and_plain_fields():
    ctx = GitHubPullContext(FakeGH(), pr_payload())
    assert (ctx.owner, ctx.repo, ctx.number) == ("octo", "widgets", 12)
    assert ctx.locator == "octo/widgets#12"
    assert ctx.title() == "Tidy up"
    assert ctx.body() == ""
    assert ctx.head_sha() == SHA
    assert ctx.labels() == ["merge when ready", "docs"]


def test_same_repo_head_uses_branch_name():
    ctx = GitHubPullContext(FakeGH(), pr_payload())
    assert ctx.branches() == ("main", "tidy")
    assert not is_fork_head(ctx.branches()[1])


def test_fork_head_is_qualified_with_owner():
    fork_repo = {"id": 99, "name": "widgets", "owner": {"login": "contributor"}}
    pr = pr_payload(head={"ref": "tidy", "sha": SHA, "label": "contributor:tidy", "repo": fork_repo})
    ctx = GitHubPullContext(FakeGH(), pr)
    assert ctx.branches() == ("main", "contributor:tidy")
    assert is_fork_head(ctx.branches()[1])


def test_deleted_fork_repo_is_treated_as_fork():
    pr = pr_payload(head={"ref": "tidy", "sha": SHA, "label": "contributor:tidy", "repo": None})
    assert GitHubPullContext(FakeGH(), pr).branches()[1] == "contributor:tidy"


def test_success_statuses_include_only_successful_contexts_and_check_runs():
    gh = FakeGH()
    ctx = GitHubPullContext(gh, pr_payload())
    assert ctx.current_success_statuses() == ["build", "lint"]
    assert ctx.current_success_statuses() == ["build", "lint"]
    # fetched once per snapshot
    assert gh.calls == [("list_commit_statuses", SHA), ("list_check_runs", SHA)]


def test_comments_list_review_comments_before_issue_comments():
    ctx = GitHubPullContext(FakeGH(), pr_payload())
    assert ctx.comments() == ["nit: rename", "LGTM", ""]


def test_commits_keep_full_messages_in_order():
    commits = GitHubPullContext(FakeGH(), pr_payload()).commits()
    assert [c.sha for c in commits] == ["a1", "b2"]
    assert commits[0].message == "first\n\ndetails"


def test_branch_protection_is_fetched_once():
    gh = FakeGH()
    ctx = GitHubPullContext(gh, pr_payload())
    assert ctx.required_statuses() == ["build", "lint"]
    assert ctx.push_restrictions() is True
    assert gh.calls == [("get_branch_protection", "main")]


def test_unprotected_branch_has_no_requirements():
    gh = FakeGH()
    gh.protection = None
    ctx = GitHubPullContext(gh, pr_payload())
    assert ctx.required_statuses() == []
    assert ctx.push_restrictions() is False


def test_merge_state_is_fetched_fresh():
    gh = FakeGH()
    ctx = GitHubPullContext(gh, pr_payload())
    assert ctx.merge_state() == MergeState(closed=False, mergeable=True)
    gh.pr_state = {"state": "closed", "mergeable": None}
    assert ctx.merge_state() == MergeState(closed=True, mergeable=None)
    assert len([c for c in gh.calls if c[0] == "get_pr"]) == 2


def test_is_targeted_queries_head_branch():
    gh = FakeGH()
    ctx = GitHubPullContext(gh, pr_payload())
    assert ctx.is_targeted() is False
    gh.open_pulls = [{"number": 13}]
    assert ctx.is_targeted() is True
    assert gh.calls[-1] == ("list_open_pulls", "tidy")


@pytest.mark.parametrize(
    "auto_merge, expected",
    [(None, False), ({"merge_method": "squash"}, True), ({}, True)],
)
def test_auto_merge_is_set_when_field_present(auto_merge, expected):
    ctx = GitHubPullContext(FakeGH(), pr_payload(auto_merge=auto_merge))
    assert ctx.is_auto_merge() is expected


def test_draft_flag():
    assert GitHubPullContext(FakeGH(), pr_payload(draft=True)).is_draft() is True
    assert GitHubPullContext(FakeGH(), pr_payload()).is_draft() is False


@pytest.mark.parametrize(
    "call",
    ["merge_state", "required_statuses", "current_success_statuses", "comments", "commits", "is_targeted"],
)
def test_api_errors_become_pull_context_errors(call):
    ctx = GitHubPullContext(FakeGH(error=httpx.ConnectError("down")), pr_payload())
    with pytest.raises(PullContextError) as exc:
        getattr(ctx, call)()
    assert isinstance(exc.value.__cause__, httpx.HTTPError)
    assert "octo/widgets#12" in str(exc.value)
