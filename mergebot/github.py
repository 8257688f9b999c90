import time
import base64
import logging
import threading
from typing import Any, Dict, Optional, Tuple, List
from urllib.parse import quote
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
    github_rate_limit_reset,
    throttles_total,
)
from .store import Store

logger = logging.getLogger(__name__)

# Refresh installation tokens this many seconds before they expire
TOKEN_SAFETY_MARGIN_SECONDS = 120
PER_PAGE = 100


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


class GitHubClient:
    # installation id -> (token, expiry epoch), shared by all clients in the process
    _tok_cache: Dict[int, Tuple[str, float]] = {}
    _tok_lock = threading.Lock()

    def __init__(self, installation_id: int, token: Optional[str] = None):
        self.installation_id = installation_id
        # A static token (e.g. a user token for push-restricted branches) bypasses App auth
        self._static_token = token
        self.base_url = SETTINGS.github_api_url
        self.app_id = SETTINGS.app_id
        self.private_key_pem = SETTINGS.app_private_key.encode("utf-8")
        self._store = Store()

    @classmethod
    def for_token(cls, installation_id: int, token: str) -> "GitHubClient":
        return cls(installation_id, token=token)

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": SETTINGS.app_id,
        }
        return jwt.encode(payload, self.private_key_pem, algorithm="RS256")

    def _installation_token(self) -> str:
        with self._tok_lock:
            cached = self._tok_cache.get(self.installation_id)
            if cached and time.time() < cached[1] - TOKEN_SAFETY_MARGIN_SECONDS:
                return cached[0]
            token, expiry = self._exchange_token()
            self._tok_cache[self.installation_id] = (token, expiry)
            return token

    def _exchange_token(self) -> Tuple[str, float]:
        jwt_ = self._app_jwt()
        url = f"{self.base_url}/app/installations/{self.installation_id}/access_tokens"
        headers = {
            "Authorization": f"Bearer {jwt_}",
            "Accept": "application/vnd.github+json",
        }
        endpoint = "POST /app/installations/{id}/access_tokens"
        start = time.perf_counter()
        logger.debug(
            "github.request: method=POST path=%s installation=%s phase=token_exchange",
            _safe_url(url),
            self.installation_id,
        )
        resp = httpx.post(url, headers=headers, timeout=30)
        duration = time.perf_counter() - start
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
        logger.debug(
            "github.response: method=POST path=%s status=%s duration_ms=%d installation=%s phase=token_exchange",
            _safe_url(url),
            resp.status_code,
            int(duration * 1000),
            self.installation_id,
        )
        resp.raise_for_status()
        data = resp.json()
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        else:
            expiry = time.time() + 3600
        return data.get("token"), expiry

    def _headers(self) -> Dict[str, str]:
        token = self._static_token or self._installation_token()
        return {
            "Authorization": f"token {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": f"{SETTINGS.app_name}/{SETTINGS.service_version}",
        }

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method} {path if path.startswith('/') else '/' + path}"

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            # Retry on network/timeout errors
            if exc is not None:
                return True
            if resp is None:
                return False
            status = resp.status_code
            # Retry on 5xx always; on 429/403 (rate limit/secondary) for idempotent requests only
            idempotent = method.upper() in ("GET", "PUT") and not endpoint.endswith("/merge")
            if status >= 500:
                return True
            if status in (429, 403) and idempotent:
                return True
            return False

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            logger.debug(
                "github.request: method=%s path=%s installation=%s params=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                self.installation_id,
                _param_keys(params),
                attempts,
            )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._handle_rate_limit(resp)
                logger.debug(
                    "github.response: method=%s path=%s status=%s duration_ms=%d installation=%s rl_remaining=%s attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    resp.status_code,
                    int(duration * 1000),
                    self.installation_id,
                    resp.headers.get("X-RateLimit-Remaining"),
                    attempts,
                )
            else:
                logger.debug(
                    "github.response_error: method=%s path=%s error=%s duration_ms=%d installation=%s attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    exc,
                    int(duration * 1000),
                    self.installation_id,
                    attempts,
                )
            if not should_retry(resp, exc) or attempts >= 3:
                if exc is not None:
                    raise exc
                return resp  # type: ignore
            # sleep with exponential backoff
            sleep_s = min(
                SETTINGS.backoff_base_seconds * (SETTINGS.backoff_factor ** (attempts - 1)),
                SETTINGS.max_backoff_seconds,
            )
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s installation=%s",
                method.upper(),
                _safe_url(url),
                sleep_s,
                attempts,
                self.installation_id,
            )
            time.sleep(sleep_s)

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        rem_i: Optional[int] = None
        reset_i: Optional[int] = None
        try:
            if remaining is not None:
                rem_i = int(remaining)
                github_rate_limit_remaining.labels(installation=str(self.installation_id)).set(rem_i)
            if reset is not None:
                reset_i = int(reset)
                github_rate_limit_reset.labels(installation=str(self.installation_id)).set(reset_i)
        except ValueError:
            logger.debug("Ignoring malformed rate limit headers remaining=%s reset=%s", remaining, reset)

        status = resp.status_code
        low_budget = rem_i is not None and rem_i <= SETTINGS.rate_limit_min_remaining
        if status not in (403, 429) and not low_budget:
            return

        if status == 429:
            reason = "retry_after"
        elif status == 403 and "secondary" in self._error_message(resp).lower():
            reason = "secondary"
        else:
            reason = "primary"

        now = time.time()
        until: Optional[float] = None
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                until = now + int(retry_after)
            except ValueError:
                until = None
        if until is None and reset_i is not None:
            until = reset_i
        if until is None:
            until = now + SETTINGS.rate_limit_cooldown_seconds
        # Add small jitter to avoid thundering herd
        until = until + min(SETTINGS.rate_limit_jitter_seconds, 15)
        try:
            self._store.set_throttle(self.installation_id, until, reason=reason)
        except Exception:
            # the request itself succeeded; throttling is best effort
            logger.warning("Failed to record throttle for installation %s", self.installation_id, exc_info=True)
            return
        throttles_total.labels(scope="installation", reason=reason).inc()

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        content_type = (resp.headers.get("content-type") or resp.headers.get("Content-Type") or "").lower()
        if not content_type.startswith("application/json"):
            return ""
        try:
            return str(resp.json().get("message", ""))
        except ValueError:
            return ""

    # --- JSON helpers ---
    def get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        r = self.request("GET", path, params=params)
        r.raise_for_status()
        return r.json()

    def paginate(self, path: str, params: Optional[Dict[str, Any]] = None, key: Optional[str] = None) -> List[Any]:
        """Collect every page of a list endpoint; key selects the list inside wrapped responses."""
        items: List[Any] = []
        page = 1
        while True:
            query = dict(params or {})
            query.update({"per_page": PER_PAGE, "page": page})
            data = self.get_json(path, params=query)
            batch = data.get(key, []) if key else data
            items.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        return items

    # --- Pull requests ---
    def get_pr(self, owner: str, repo: str, number: int) -> Dict[str, Any]:
        return self.get_json(f"/repos/{owner}/{repo}/pulls/{number}")

    def list_open_pulls(self, owner: str, repo: str, base: Optional[str] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"state": "open"}
        if base:
            params["base"] = base
        return self.paginate(f"/repos/{owner}/{repo}/pulls", params=params)

    def list_prs_for_commit(self, owner: str, repo: str, sha: str) -> List[Dict[str, Any]]:
        """List pull requests associated with a commit SHA."""
        return self.paginate(f"/repos/{owner}/{repo}/commits/{sha}/pulls")

    def list_pr_comments(self, owner: str, repo: str, number: int) -> List[Dict[str, Any]]:
        return self.paginate(f"/repos/{owner}/{repo}/pulls/{number}/comments")

    def list_issue_comments(self, owner: str, repo: str, number: int) -> List[Dict[str, Any]]:
        return self.paginate(f"/repos/{owner}/{repo}/issues/{number}/comments")

    def list_pr_commits(self, owner: str, repo: str, number: int) -> List[Dict[str, Any]]:
        return self.paginate(f"/repos/{owner}/{repo}/pulls/{number}/commits")

    def merge_pr(
        self, owner: str, repo: str, number: int, method: str, commit_title: str, commit_message: str
    ) -> Dict[str, Any]:
        """Merge a pull request. Raises httpx.HTTPStatusError when GitHub rejects the merge."""
        data: Dict[str, Any] = {"merge_method": method}
        # empty values let GitHub pick its defaults
        if commit_title:
            data["commit_title"] = commit_title
        if commit_message:
            data["commit_message"] = commit_message
        r = self.request("PUT", f"/repos/{owner}/{repo}/pulls/{number}/merge", data=data)
        r.raise_for_status()
        return r.json()

    # --- Statuses and branch protection ---
    def list_commit_statuses(self, owner: str, repo: str, sha: str) -> List[Dict[str, Any]]:
        """Latest status per context from the combined status endpoint."""
        return self.paginate(f"/repos/{owner}/{repo}/commits/{sha}/status", key="statuses")

    def list_check_runs(self, owner: str, repo: str, sha: str) -> List[Dict[str, Any]]:
        return self.paginate(f"/repos/{owner}/{repo}/commits/{sha}/check-runs", key="check_runs")

    def get_branch_protection(self, owner: str, repo: str, branch: str) -> Optional[Dict[str, Any]]:
        r = self.request("GET", f"/repos/{owner}/{repo}/branches/{quote(branch, safe='')}/protection")
        if r.status_code == 404:
            return None
        r.raise_for_status()
        return r.json()

    # --- Refs ---
    def update_ref(self, owner: str, repo: str, branch: str, sha: str, force: bool = False) -> Dict[str, Any]:
        r = self.request(
            "PATCH", f"/repos/{owner}/{repo}/git/refs/heads/{branch}", data={"sha": sha, "force": force}
        )
        r.raise_for_status()
        return r.json()

    def delete_ref(self, owner: str, repo: str, branch: str) -> None:
        r = self.request("DELETE", f"/repos/{owner}/{repo}/git/refs/heads/{branch}")
        r.raise_for_status()

    def compare_commits(self, owner: str, repo: str, base: str, head: str) -> Dict[str, Any]:
        return self.get_json(f"/repos/{owner}/{repo}/compare/{base}...{head}")

    def merge_branches(self, owner: str, repo: str, base: str, head: str) -> Optional[Dict[str, Any]]:
        """Merge head into the branch named base. Returns None when there was nothing to merge."""
        r = self.request("POST", f"/repos/{owner}/{repo}/merges", data={"base": base, "head": head})
        r.raise_for_status()
        if r.status_code == 204:
            return None
        return r.json()

    # --- Contents ---
    def load_repo_file(self, owner: str, repo: str, path: str, ref: Optional[str] = None) -> Optional[str]:
        """Return the decoded file contents, or None when the file does not exist at ref."""
        params = {"ref": ref} if ref else None
        r = self.request("GET", f"/repos/{owner}/{repo}/contents/{path}", params=params)
        if r.status_code == 404:
            return None
        r.raise_for_status()
        data = r.json()
        # a directory at the path comes back as a list
        if not isinstance(data, dict) or data.get("encoding") != "base64":
            return None
        return base64.b64decode(data.get("content", "")).decode("utf-8")
