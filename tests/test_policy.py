import pytest

from mergebot.errors import ConfigError
from mergebot.models import MergeMethod
from mergebot.policy import (
    COMMIT_MSG_DELIMITER,
    DO_NOT_MERGE_LABELS,
    MERGE_WHEN_READY_LABELS,
    MERGE_WHEN_READY_MARKER,
    UPDATE_ME_LABELS,
    parse_config,
)


V1 = """
version: 1

merge:
  trigger:
    labels: ["merge when ready"]
    comment_substrings: ["==MERGE_WHEN_READY=="]
  ignore:
    labels: ["do not merge"]
  method: squash
  options:
    squash:
      title: first_commit_title
      body: pull_request_body
      message_delimiter: ==COMMIT_MSG==
  branch_method:
    develop: rebase
  required_statuses:
    - "ci/circleci: ete-tests"
  delete_after_merge: true
  allow_merge_with_no_checks: false

update:
  trigger:
    labels: ["wip", "update me"]
  ignore_drafts: true
  required_statuses: ["ci"]
"""


def test_parse_v1_full():
    config = parse_config(V1)
    assert config.version == 1
    assert config.merge.trigger.labels == ["merge when ready"]
    assert config.merge.trigger.comment_substrings == ["==MERGE_WHEN_READY=="]
    assert config.merge.ignore.labels == ["do not merge"]
    assert config.merge.method == "squash"
    assert config.merge.options.squash.title == "first_commit_title"
    assert config.merge.options.squash.message_delimiter == "==COMMIT_MSG=="
    assert config.merge.branch_method == {"develop": "rebase"}
    assert config.merge.required_statuses == ["ci/circleci: ete-tests"]
    assert config.merge.delete_after_merge is True
    assert config.update.trigger.labels == ["wip", "update me"]
    assert config.update.ignore_drafts is True
    assert config.update.required_statuses == ["ci"]


def test_parse_v1_ignore_drafts_unset_is_none():
    config = parse_config("version: 1\nupdate:\n  trigger:\n    labels: [x]\n")
    assert config.update.ignore_drafts is None


def test_legacy_names_fill_in_when_new_fields_absent():
    config = parse_config(
        """
version: 1
merge:
  whitelist:
    labels: ["merge when ready"]
  blacklist:
    labels: ["wip"]
update:
  allow:
    labels: ["update me"]
  deny:
    branches: ["main"]
"""
    )
    assert config.merge.trigger.labels == ["merge when ready"]
    assert config.merge.ignore.labels == ["wip"]
    assert config.update.trigger.labels == ["update me"]
    assert config.update.ignore.branches == ["main"]


def test_new_names_win_over_legacy_names():
    config = parse_config(
        """
version: 1
merge:
  trigger:
    labels: ["ship it"]
  whitelist:
    labels: ["merge when ready"]
  allow:
    labels: ["allowed"]
  ignore:
    labels: ["hold"]
  deny:
    labels: ["denied"]
"""
    )
    assert config.merge.trigger.labels == ["ship it"]
    assert config.merge.ignore.labels == ["hold"]


def test_whitelist_wins_over_allow():
    config = parse_config(
        """
version: 1
merge:
  whitelist:
    labels: ["a"]
  allow:
    labels: ["b"]
"""
    )
    assert config.merge.trigger.labels == ["a"]


def test_unknown_keys_are_rejected():
    with pytest.raises(ConfigError):
        parse_config("version: 1\nmerge:\n  trigger:\n    labelz: [x]\n")


def test_empty_keys_fall_back_to_defaults():
    config = parse_config(
        "version: 1\n"
        "merge:\n"
        "  trigger:\n"
        "    labels: [\"merge when ready\"]\n"
        "    comments:\n"
        "  ignore:\n"
        "  required_statuses:\n"
        "  options:\n"
        "    squash:\n"
        "update:\n"
    )
    assert config.merge.trigger.labels == ["merge when ready"]
    assert config.merge.trigger.comments == []
    assert not config.merge.ignore.enabled()
    assert config.merge.required_statuses == []
    assert config.merge.options.squash is None
    assert not config.update.trigger.enabled()


def test_empty_legacy_keys_fall_back_to_defaults():
    config = parse_config("mode: whitelist\nstrategy: merge\ndeleteAfterMerge:\n")
    assert config.merge.delete_after_merge is False
    assert config.merge.trigger.labels == MERGE_WHEN_READY_LABELS


def test_wrong_version_is_rejected():
    with pytest.raises(ConfigError) as exc:
        parse_config("version: 2\n")
    assert "version" in str(exc.value)


def test_invalid_yaml_is_config_error():
    with pytest.raises(ConfigError):
        parse_config("version: [1\n")
    with pytest.raises(ConfigError):
        parse_config("- just\n- a list\n")


def test_v0_whitelist_mode():
    config = parse_config("mode: whitelist\nstrategy: squash\ndeleteAfterMerge: true\n")
    assert config.version == 1
    assert config.merge.trigger.labels == MERGE_WHEN_READY_LABELS
    assert not config.merge.ignore.enabled()
    assert config.merge.method == MergeMethod.SQUASH.value
    assert config.merge.delete_after_merge is True
    assert config.merge.options.squash.body == "summarize_commits"
    assert config.update.trigger.labels == UPDATE_ME_LABELS


def test_v0_blacklist_mode():
    config = parse_config("mode: blacklist\nstrategy: merge\n")
    assert config.merge.ignore.labels == DO_NOT_MERGE_LABELS
    assert not config.merge.trigger.enabled()
    assert config.merge.options.squash is None
    assert config.update.trigger.labels == UPDATE_ME_LABELS


def test_v0_pr_body_mode_squash():
    config = parse_config("mode: pr_body\nstrategy: squash\nignoreSquashedMessages: true\n")
    assert config.merge.trigger.comment_substrings == [MERGE_WHEN_READY_MARKER]
    assert config.merge.options.squash.body == "pull_request_body"
    assert config.merge.options.squash.message_delimiter == COMMIT_MSG_DELIMITER


def test_v0_unknown_mode_raises_v1_error():
    with pytest.raises(ConfigError) as exc:
        parse_config("mode: sometimes\nstrategy: merge\n")
    assert "configuration" in str(exc.value)
