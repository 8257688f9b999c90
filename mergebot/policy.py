"""Parsing of repository policy files.

Two file shapes are understood. Version 1 files carry ``version: 1`` and
``merge``/``update`` sections. Legacy (v0) files carry a single ``mode`` and
are translated into the version 1 shape. Within version 1 files the legacy
signal names ``whitelist``/``blacklist`` and ``allow``/``deny`` are folded
into ``trigger``/``ignore`` once, here, so nothing downstream needs to know
about them.
"""
import logging
from typing import Any, Dict, TypeVar, Union

import yaml
from pydantic import ValidationError

from .errors import ConfigError
from .models import (
    BodyStrategy,
    ConfigV0,
    MergeConfig,
    MergeMethod,
    MergeOptions,
    ModeV0,
    RepoConfig,
    SquashOptions,
    UpdateConfig,
)
from .signals import Signals

logger = logging.getLogger(__name__)

UPDATE_ME_LABELS = ["update me", "update-me", "update_me"]
MERGE_WHEN_READY_LABELS = ["merge when ready", "merge-when-ready", "merge_when_ready"]
DO_NOT_MERGE_LABELS = ["wip", "do not merge", "do-not-merge", "do_not_merge"]
MERGE_WHEN_READY_MARKER = "==MERGE_WHEN_READY=="
COMMIT_MSG_DELIMITER = "==COMMIT_MSG=="

# Checked in order; the first enabled field wins
TRIGGER_FIELDS = ("trigger", "whitelist", "allow")
IGNORE_FIELDS = ("ignore", "blacklist", "deny")

Section = TypeVar("Section", MergeConfig, UpdateConfig)


def load_yaml(text: Union[str, bytes]) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to decode configuration: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("configuration must be a mapping")
    return data


def _first_enabled(section: Union[MergeConfig, UpdateConfig], fields) -> Signals:
    for name in fields:
        signals = getattr(section, name)
        if signals.enabled():
            return signals
    return getattr(section, fields[0])


def normalize_section(section: Section) -> Section:
    return section.model_copy(
        update={
            "trigger": _first_enabled(section, TRIGGER_FIELDS),
            "ignore": _first_enabled(section, IGNORE_FIELDS),
        }
    )


def parse_config_v1(data: Dict[str, Any]) -> RepoConfig:
    try:
        config = RepoConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"failed to unmarshal configuration: {e}") from e
    if config.version != 1:
        raise ConfigError(f"unexpected version {config.version}, expected 1")
    return config.model_copy(
        update={
            "merge": normalize_section(config.merge),
            "update": normalize_section(config.update),
        }
    )


def parse_config_v0(data: Dict[str, Any]) -> RepoConfig:
    try:
        v0 = ConfigV0.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"failed to unmarshal v0 configuration: {e}") from e

    merge = MergeConfig(
        delete_after_merge=v0.delete_after_merge,
        allow_merge_with_no_checks=False,
        method=v0.strategy,
    )
    squash_options = SquashOptions(body=BodyStrategy.SUMMARIZE_COMMITS.value)
    if v0.mode == ModeV0.WHITELIST.value:
        merge.trigger = Signals(labels=list(MERGE_WHEN_READY_LABELS))
    elif v0.mode == ModeV0.BLACKLIST.value:
        merge.ignore = Signals(labels=list(DO_NOT_MERGE_LABELS))
    elif v0.mode == ModeV0.PR_BODY.value:
        merge.trigger = Signals(comment_substrings=[MERGE_WHEN_READY_MARKER])
        squash_options = SquashOptions(
            body=BodyStrategy.PULL_REQUEST_BODY.value,
            message_delimiter=COMMIT_MSG_DELIMITER,
        )
    else:
        raise ConfigError(f"unknown v0 mode: {v0.mode!r}")

    if merge.method == MergeMethod.SQUASH.value:
        merge.options = MergeOptions(squash=squash_options)

    return RepoConfig(
        version=1,
        merge=merge,
        update=UpdateConfig(trigger=Signals(labels=list(UPDATE_ME_LABELS))),
    )


def parse_config(text: Union[str, bytes]) -> RepoConfig:
    """Parse a policy file, trying version 1 first and then the legacy shape.

    When neither shape fits, the version 1 error is raised to encourage
    migrating to it.
    """
    data = load_yaml(text)
    try:
        return parse_config_v1(data)
    except ConfigError as v1_err:
        try:
            config = parse_config_v0(data)
        except ConfigError as v0_err:
            logger.debug("Policy is not a valid v0 configuration either: %s", v0_err)
            raise v1_err
        logger.debug("Parsed legacy v0 configuration (mode=%s)", data.get("mode"))
        return config
