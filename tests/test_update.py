import httpx

from mergebot.pull import MergeState
from mergebot.runner import PollSettings
from mergebot.update import GitHubUpdater, UpdateOutcome, run_update_loop, update_pr

from pulltest import MockPullContext, fetch_error

POLL = PollSettings(max_attempts=5, delay=0)


def no_sleep(seconds):
    pass


def http_error(status):
    request = httpx.Request("POST", "https://api.github.com/repos/o/r/merges")
    return httpx.HTTPStatusError("failed", request=request, response=httpx.Response(status, request=request))


class FakeUpdater:
    def __init__(self, behind=1, compare_errors=None, merge_errors=None):
        self.behind = behind
        self.compare_errors = list(compare_errors or [])
        self.merge_errors = list(merge_errors or [])
        self.compares = 0
        self.merges = []

    def behind_by(self, pull_ctx, base_ref):
        self.compares += 1
        if self.compare_errors:
            raise self.compare_errors.pop(0)
        return self.behind

    def merge_forward(self, pull_ctx, base_ref):
        self.merges.append(base_ref)
        if self.merge_errors:
            raise self.merge_errors.pop(0)
        return "merge-sha"


def test_updates_when_behind():
    updater = FakeUpdater(behind=3)
    assert run_update_loop(MockPullContext(), updater, "develop", POLL, no_sleep) == UpdateOutcome.UPDATED
    assert updater.merges == ["develop"]


def test_no_update_when_up_to_date():
    updater = FakeUpdater(behind=0)
    assert run_update_loop(MockPullContext(), updater, "develop", POLL, no_sleep) == UpdateOutcome.UP_TO_DATE
    assert updater.merges == []


def test_closed_pull_request_stops():
    ctx = MockPullContext(merge_states=[MergeState(closed=True, mergeable=None)])
    updater = FakeUpdater()
    assert run_update_loop(ctx, updater, "develop", POLL, no_sleep) == UpdateOutcome.CLOSED
    assert updater.compares == 0


def test_transient_errors_are_retried():
    ctx = MockPullContext(merge_states=[fetch_error("pull request"), MergeState(closed=False, mergeable=None)])
    updater = FakeUpdater(compare_errors=[httpx.ReadTimeout("slow")], merge_errors=[http_error(502)])
    assert run_update_loop(ctx, updater, "develop", POLL, no_sleep) == UpdateOutcome.UPDATED
    assert updater.compares == 3
    assert len(updater.merges) == 2


def test_conflict_stops():
    updater = FakeUpdater(merge_errors=[http_error(409)])
    assert run_update_loop(MockPullContext(), updater, "develop", POLL, no_sleep) == UpdateOutcome.CONFLICT
    assert len(updater.merges) == 1


def test_gives_up_after_attempt_bound():
    updater = FakeUpdater(compare_errors=[http_error(500)] * 10)
    outcome = run_update_loop(MockPullContext(), updater, "develop", PollSettings(2, 0), no_sleep)
    assert outcome == UpdateOutcome.GAVE_UP
    assert updater.compares == 2


def test_update_pr_skips_forks():
    ctx = MockPullContext(branch_name="fork-owner:feature")
    updater = FakeUpdater()
    assert update_pr(ctx, updater, "develop", POLL, no_sleep) is None
    assert updater.compares == 0


def test_update_pr_runs_in_background():
    updater = FakeUpdater(behind=2)
    thread = update_pr(MockPullContext(), updater, "develop", POLL, no_sleep)
    thread.join(timeout=5)
    assert updater.merges == ["develop"]


class FakeGH:
    def __init__(self, behind_by=2, merge_result=None):
        self.behind_by = behind_by
        self.merge_result = merge_result
        self.calls = []

    def compare_commits(self, owner, repo, base, head):
        self.calls.append(("compare", base, head))
        return {"behind_by": self.behind_by, "ahead_by": 1}

    def merge_branches(self, owner, repo, base, head):
        self.calls.append(("merge", base, head))
        return self.merge_result


def test_github_updater_merges_base_into_head():
    gh = FakeGH(merge_result={"sha": "new"})
    ctx = MockPullContext(branch_base="develop", branch_name="feature")
    updater = GitHubUpdater(gh)
    assert updater.behind_by(ctx, "develop") == 2
    assert updater.merge_forward(ctx, "develop") == "new"
    assert gh.calls == [("compare", "develop", "feature"), ("merge", "feature", "develop")]


def test_github_updater_nothing_to_merge():
    assert GitHubUpdater(FakeGH(merge_result=None)).merge_forward(MockPullContext(), "develop") is None
