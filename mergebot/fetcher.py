import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import httpx
import redis

from .config import SETTINGS
from .errors import ConfigError
from .metrics import config_fetch_total
from .models import RepoConfig
from .policy import load_yaml, parse_config, parse_config_v0, parse_config_v1
from .store import Store

logger = logging.getLogger(__name__)


@dataclass
class FetchedConfig:
    owner: str
    repo: str
    ref: str
    config: Optional[RepoConfig] = None
    error: Optional[Exception] = None
    path: Optional[str] = None

    @property
    def missing(self) -> bool:
        return self.config is None and self.error is None

    @property
    def valid(self) -> bool:
        return self.config is not None and self.error is None

    @property
    def invalid(self) -> bool:
        return self.error is not None

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo} ref={self.ref}"


class ConfigFetcher:
    """Locate and parse the policy file for a repository ref.

    The version 1 path is tried first, then each legacy path, then the
    server default. A version 1 file that fails to parse only makes the
    result invalid when nothing further down the list applies. The resolved
    file is cached in Redis for ``cache_seconds``.
    """

    def __init__(
        self,
        config_path: Optional[str] = None,
        legacy_paths: Optional[List[str]] = None,
        default_config: Optional[str] = None,
        store: Optional[Store] = None,
        cache_seconds: Optional[int] = None,
    ):
        self.config_path = config_path or SETTINGS.config_path
        self.legacy_paths = list(SETTINGS.legacy_config_paths if legacy_paths is None else legacy_paths)
        default_text = SETTINGS.default_repository_config if default_config is None else default_config
        # a broken server default is a deployment error, not a repository one
        self.default_config = parse_config(default_text) if default_text else None
        self.store = store
        self.cache_seconds = SETTINGS.config_cache_seconds if cache_seconds is None else cache_seconds

    def _parse(self, path: str, content: str) -> RepoConfig:
        data = load_yaml(content)
        if path == self.config_path:
            return parse_config_v1(data)
        return parse_config_v0(data)

    def _fetch(self, gh: Any, owner: str, repo: str, ref: str, path: str) -> Optional[str]:
        logger.debug("Attempting to fetch configuration path=%s ref=%s repo=%s/%s", path, ref, owner, repo)
        try:
            return gh.load_repo_file(owner, repo, path, ref)
        except httpx.HTTPError as e:
            raise ConfigError(f"failed to fetch content of {path!r}") from e

    def _resolve(self, gh: Any, owner: str, repo: str, ref: str) -> Tuple[Optional[str], Optional[str]]:
        """Return (path, content) of the file that decides the policy, or (None, None)."""
        v1_content = self._fetch(gh, owner, repo, ref, self.config_path)
        if v1_content is not None:
            try:
                self._parse(self.config_path, v1_content)
                return self.config_path, v1_content
            except ConfigError as e:
                logger.debug("v1 configuration at %s is invalid: %s", self.config_path, e)
        logger.debug("v1 configuration was missing or invalid, falling back to v0 or server configuration")

        for path in self.legacy_paths:
            content = self._fetch(gh, owner, repo, ref, path)
            if content is None:
                continue
            try:
                self._parse(path, content)
            except ConfigError as e:
                logger.debug("v0 configuration at %s is invalid: %s", path, e)
                continue
            return path, content

        # the server default takes precedence over an invalid v1 file
        if v1_content is not None and self.default_config is None:
            return self.config_path, v1_content
        return None, None

    def _cached(self, owner: str, repo: str, ref: str) -> Optional[dict]:
        if self.store is None or self.cache_seconds <= 0:
            return None
        try:
            return self.store.get_cached_config(owner, repo, ref)
        except redis.RedisError:
            logger.warning("Config cache read failed for %s/%s ref=%s", owner, repo, ref, exc_info=True)
            return None

    def _remember(self, owner: str, repo: str, ref: str, path: Optional[str], content: Optional[str]) -> None:
        if self.store is None:
            return
        try:
            self.store.put_cached_config(owner, repo, ref, path, content, self.cache_seconds)
        except redis.RedisError:
            logger.warning("Config cache write failed for %s/%s ref=%s", owner, repo, ref, exc_info=True)

    def forget(self, owner: str, repo: str, ref: str) -> None:
        """Drop the cached lookup for a ref, e.g. after a push may have changed its policy file."""
        if self.store is None:
            return
        try:
            self.store.invalidate_config(owner, repo, ref)
        except redis.RedisError:
            logger.warning("Config cache invalidation failed for %s/%s ref=%s", owner, repo, ref, exc_info=True)

    def config_for_ref(self, gh: Any, owner: str, repo: str, ref: str) -> FetchedConfig:
        """Fetch the policy for a ref.

        Raises ConfigError only when the presence of a file could not be
        determined. Missing and invalid files are reported on the result.
        """
        fc = FetchedConfig(owner=owner, repo=repo, ref=ref)

        cached = self._cached(owner, repo, ref)
        if cached is not None:
            path, content = cached.get("path"), cached.get("content")
            logger.debug("Using cached configuration lookup for %s path=%s", fc, path)
        else:
            path, content = self._resolve(gh, owner, repo, ref)
            self._remember(owner, repo, ref, path, content)

        if path is not None and content is not None:
            fc.path = path
            try:
                fc.config = self._parse(path, content)
            except ConfigError as e:
                fc.error = e
                config_fetch_total.labels(result="invalid").inc()
                return fc
            logger.debug("Found configuration at %s for %s", path, fc)
            config_fetch_total.labels(result="valid").inc()
            return fc

        if self.default_config is not None:
            logger.debug("No repository configuration found for %s, using server-provided default", fc)
            fc.config = self.default_config
            config_fetch_total.labels(result="default").inc()
            return fc

        config_fetch_total.labels(result="missing").inc()
        return fc

    def config_for_pr(self, gh: Any, pr: dict) -> FetchedConfig:
        base = pr.get("base") or {}
        base_repo = base.get("repo") or {}
        return self.config_for_ref(
            gh, (base_repo.get("owner") or {}).get("login", ""), base_repo.get("name", ""), base.get("ref", "")
        )
