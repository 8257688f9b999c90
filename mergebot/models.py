from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .signals import Signals, drop_null_fields


class MergeMethod(str, Enum):
    MERGE = "merge"
    SQUASH = "squash"
    REBASE = "rebase"
    FF_ONLY = "ff-only"


class TitleStrategy(str, Enum):
    PULL_REQUEST_TITLE = "pull_request_title"
    FIRST_COMMIT_TITLE = "first_commit_title"
    GITHUB_DEFAULT_TITLE = "github_default_title"


class BodyStrategy(str, Enum):
    PULL_REQUEST_BODY = "pull_request_body"
    SUMMARIZE_COMMITS = "summarize_commits"
    EMPTY_BODY = "empty_body"


class Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="before")
    @classmethod
    def empty_keys_use_defaults(cls, data: Any) -> Any:
        return drop_null_fields(data)


class SquashOptions(Strict):
    # Empty values select the defaults: pull_request_title and empty_body
    title: str = ""
    body: str = ""
    message_delimiter: str = ""


class MergeOptions(Strict):
    squash: Optional[SquashOptions] = None


class MergeConfig(Strict):
    trigger: Signals = Field(default_factory=Signals)
    ignore: Signals = Field(default_factory=Signals)

    # Legacy names, folded into trigger/ignore when the policy is parsed
    whitelist: Signals = Field(default_factory=Signals)
    blacklist: Signals = Field(default_factory=Signals)
    allow: Signals = Field(default_factory=Signals)
    deny: Signals = Field(default_factory=Signals)

    delete_after_merge: bool = False
    allow_merge_with_no_checks: bool = False

    # Unknown methods fall back to a merge commit at merge time
    method: str = MergeMethod.MERGE.value
    options: MergeOptions = Field(default_factory=MergeOptions)
    branch_method: Dict[str, str] = Field(default_factory=dict)

    # Status checks required in addition to the branch protection settings
    required_statuses: List[str] = Field(default_factory=list)


class UpdateConfig(Strict):
    trigger: Signals = Field(default_factory=Signals)
    ignore: Signals = Field(default_factory=Signals)

    whitelist: Signals = Field(default_factory=Signals)
    blacklist: Signals = Field(default_factory=Signals)
    allow: Signals = Field(default_factory=Signals)
    deny: Signals = Field(default_factory=Signals)

    # None means not configured
    ignore_drafts: Optional[bool] = None
    required_statuses: List[str] = Field(default_factory=list)


class RepoConfig(Strict):
    version: int
    merge: MergeConfig = Field(default_factory=MergeConfig)
    update: UpdateConfig = Field(default_factory=UpdateConfig)


class ModeV0(str, Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    PR_BODY = "pr_body"


class ConfigV0(Strict):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    mode: str = ""
    strategy: str = ""
    delete_after_merge: bool = Field(False, alias="deleteAfterMerge")
    allow_merge_with_no_checks: bool = False
    # accepted for compatibility; has no effect
    ignore_squashed_messages: bool = Field(False, alias="ignoreSquashedMessages")
