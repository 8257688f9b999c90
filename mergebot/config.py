import os
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str) -> List[str]:
    return [p.strip() for p in os.getenv(name, default).split(",") if p.strip()]


class Settings:
    # GitHub App config
    app_id: str
    app_private_key: str  # PEM contents (loaded from file path or env)
    webhook_secret: str
    app_name: str

    # Server config
    host: str = "0.0.0.0"
    port: int = int(os.getenv("PORT", "8080"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Redis config
    redis_url: str
    redis_namespace: str

    # General
    github_api_url: str
    service_version: str

    # Policy files
    config_path: str
    legacy_config_paths: List[str]
    default_repository_config: Optional[str]
    config_cache_seconds: int

    # Behavior
    push_restriction_user_token: str
    disable_update_feature: bool
    poll_max_attempts: int
    merge_poll_delay_seconds: float
    update_poll_delay_seconds: float

    # Rate limit/backpressure config
    rate_limit_min_remaining: int
    rate_limit_cooldown_seconds: int
    rate_limit_jitter_seconds: int
    max_backoff_seconds: int
    backoff_base_seconds: float
    backoff_factor: float

    def __init__(self) -> None:
        self.app_id = os.getenv("APP_ID", "").strip()
        # APP_PRIVATE_KEY is a filesystem path to the PEM file; a PEM string is accepted as-is.
        apk_env = os.getenv("APP_PRIVATE_KEY", "").strip()
        pem_contents = apk_env
        if apk_env and os.path.isfile(apk_env):
            with open(apk_env, "r", encoding="utf-8") as f:
                pem_contents = f.read().strip()
        self.app_private_key = pem_contents
        self.webhook_secret = os.getenv("WEBHOOK_SECRET", "").strip()
        self.app_name = os.getenv("APP_NAME", "mergebot")

        # Redis
        self.redis_url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self.redis_namespace = os.getenv("REDIS_NAMESPACE", "mergebot")

        # GitHub
        self.github_api_url = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
        self.service_version = os.getenv("SERVICE_VERSION", "dev")

        # Policy files
        self.config_path = os.getenv("CONFIG_PATH", ".mergebot.yml")
        self.legacy_config_paths = _env_list("LEGACY_CONFIG_PATHS", ".mergebot.v0.yml")
        # DEFAULT_REPOSITORY_CONFIG is a path to a policy file used when a repository has none.
        default_cfg = os.getenv("DEFAULT_REPOSITORY_CONFIG", "").strip()
        self.default_repository_config = None
        if default_cfg and os.path.isfile(default_cfg):
            with open(default_cfg, "r", encoding="utf-8") as f:
                self.default_repository_config = f.read()
        self.config_cache_seconds = int(os.getenv("CONFIG_CACHE_SECONDS", "60"))

        # Behavior
        self.push_restriction_user_token = os.getenv("PUSH_RESTRICTION_USER_TOKEN", "").strip()
        self.disable_update_feature = _env_bool("DISABLE_UPDATE_FEATURE")
        self.poll_max_attempts = int(os.getenv("POLL_MAX_ATTEMPTS", "5"))
        self.merge_poll_delay_seconds = float(os.getenv("MERGE_POLL_DELAY_SECONDS", "4"))
        self.update_poll_delay_seconds = float(os.getenv("UPDATE_POLL_DELAY_SECONDS", "2"))

        # Rate limit/backpressure
        self.rate_limit_min_remaining = int(os.getenv("RATE_LIMIT_MIN_REMAINING", "50"))
        self.rate_limit_cooldown_seconds = int(os.getenv("RATE_LIMIT_COOLDOWN_SECONDS", "60"))
        self.rate_limit_jitter_seconds = int(os.getenv("RATE_LIMIT_JITTER_SECONDS", "15"))
        self.max_backoff_seconds = int(os.getenv("MAX_BACKOFF_SECONDS", "120"))
        self.backoff_base_seconds = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
        self.backoff_factor = float(os.getenv("BACKOFF_FACTOR", "2"))

    def redis_key(self, *parts: str) -> str:
        return f"{self.redis_namespace}:" + ":".join(parts)


SETTINGS = Settings()
