"""
HTTP access to the asset repository's file API.

Builds provider-specific file URLs, attaches credentials from the auth
manager, retries transient failures with exponential backoff and jitter,
and records the provider's rate-limit headers.
"""

import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from zen.auth.manager import AuthManager
from zen.auth.providers import USER_AGENT, ProviderDescriptor, get_provider
from zen.errors import (
    Forbidden,
    InvalidArgument,
    NetworkError,
    NotAuthenticated,
    NotFound,
    RateLimited,
    Timeout,
    ZenError,
)
from zen.logging import get_logger, mask_sensitive_data
from zen.models import Credential, RateLimitInfo

logger = get_logger("http")


@dataclass
class RetryConfig:
    """Configuration for automatic retry behaviour."""

    max_retries: int = 3
    backoff_factor: float = 2.0
    retry_on: list[int] = field(default_factory=lambda: [429, 502, 503, 504])
    respect_retry_after: bool = True
    max_backoff: float = 60.0  # seconds
    jitter: float = 0.1  # ±10%


@dataclass(frozen=True)
class Repository:
    host: str
    path: str  # "owner/repo" or "group/sub/repo"

    @property
    def owner(self) -> str:
        return self.path.rsplit("/", 1)[0]

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


def parse_repository_url(url: str) -> Repository:
    """Accept https, ``git@host:owner/repo.git`` and bare ``owner/repo`` forms."""
    cleaned = url.strip().removesuffix("/").removesuffix(".git")
    if cleaned.startswith("git@"):
        host, _, path = cleaned[4:].partition(":")
    elif "://" in cleaned:
        parsed = urlparse(cleaned)
        host, path = parsed.netloc, parsed.path.strip("/")
    else:
        host, path = "github.com", cleaned.strip("/")
    if not host or path.count("/") < 1:
        raise InvalidArgument(f"cannot parse repository URL '{url}'")
    return Repository(host=host, path=path)


class AssetFetcher:
    """Authenticated GET for the manifest and asset files of one repository."""

    def __init__(
        self,
        repository_url: str,
        branch: str = "main",
        provider: str = "github",
        auth: AuthManager | None = None,
        manifest_path: str = "manifest.yaml",
        timeout: float = 30.0,
        max_concurrent: int = 3,
        retry_config: RetryConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.descriptor: ProviderDescriptor = get_provider(provider)
        if self.descriptor.id not in ("github", "gitlab"):
            raise InvalidArgument(f"assets cannot be fetched from provider '{provider}'")
        self.repository = parse_repository_url(repository_url)
        self.branch = branch
        self.manifest_path = manifest_path
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig()
        self._auth = auth
        self._sleep = sleep
        self._slots = threading.BoundedSemaphore(max_concurrent)
        self._rate_lock = threading.Lock()
        self._rate_limit = RateLimitInfo()
        self._client = httpx.Client(timeout=timeout, headers={"User-Agent": USER_AGENT})

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "AssetFetcher":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # -----------------------------------------------------------------------
    # URL and header composition
    # -----------------------------------------------------------------------

    def _api_base(self) -> str:
        host = self.repository.host
        if self.descriptor.id == "github":
            return self.descriptor.base_url if host == "github.com" else f"https://{host}/api/v3"
        return self.descriptor.base_url if host == "gitlab.com" else f"https://{host}/api/v4"

    def build_url(self, path: str, branch: str | None = None) -> str:
        path = path.lstrip("/")
        ref = quote(branch or self.branch, safe="")
        if self.descriptor.id == "github":
            return f"{self._api_base()}/repos/{self.repository.path}/contents/{quote(path)}?ref={ref}"
        project = quote(self.repository.path, safe="")
        return f"{self._api_base()}/projects/{project}/repository/files/{quote(path, safe='')}/raw?ref={ref}"

    def _credential(self) -> Credential | None:
        if self._auth is None:
            return None
        try:
            return self._auth.get_credential(self.descriptor.id)
        except NotAuthenticated:
            credential = self._auth.environment_credential(self.descriptor.id)
            if credential is None:
                logger.debug("no %s credential, requesting anonymously", self.descriptor.id)
            return credential

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if self.descriptor.id == "github":
            headers["Accept"] = "application/vnd.github.v3.raw"
            headers["X-GitHub-Api-Version"] = "2022-11-28"
        credential = self._credential()
        if credential is not None:
            headers.update(self.descriptor.auth_headers(credential.secret.get_secret_value(), credential.email))
        return headers

    # -----------------------------------------------------------------------
    # Public operations
    # -----------------------------------------------------------------------

    @property
    def rate_limit(self) -> RateLimitInfo:
        with self._rate_lock:
            return self._rate_limit

    def fetch_manifest(self, deadline: float | None = None) -> bytes:
        return self.fetch_asset(self.manifest_path, deadline=deadline)

    def fetch_asset(self, path: str, deadline: float | None = None) -> bytes:
        """GET one file. ``deadline`` is an absolute ``time.monotonic()`` bound over all attempts."""
        url = self.build_url(path)
        deadline = deadline if deadline is not None else time.monotonic() + self.timeout
        with self._slots:
            response = self._execute_with_retry(url, deadline)
        return response.content

    # -----------------------------------------------------------------------
    # Retry loop
    # -----------------------------------------------------------------------

    def _execute_with_retry(self, url: str, deadline: float) -> httpx.Response:
        headers = self._headers()
        last_error: ZenError | None = None

        for attempt in range(self.retry_config.max_retries + 1):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise Timeout(f"deadline exceeded fetching {url}")
            try:
                logger.debug("GET %s (attempt %d)", mask_sensitive_data(url), attempt + 1)
                response = self._client.get(url, headers=headers, timeout=min(self.timeout, remaining))
            except httpx.TimeoutException as exc:
                last_error = Timeout(f"request to {url} timed out", details=str(exc))
                retry_after = None
            except httpx.TransportError as exc:
                last_error = NetworkError(f"request to {url} failed", details=str(exc))
                retry_after = None
            else:
                self._record_rate_limit(response)
                logger.debug("GET %s -> %d", mask_sensitive_data(url), response.status_code)
                if response.is_success:
                    return response
                last_error = self._parse_error_response(url, response)
                if response.status_code not in self.retry_config.retry_on:
                    raise last_error
                retry_after = response.headers.get("Retry-After")

            if attempt >= self.retry_config.max_retries:
                break
            wait_time = self._get_backoff_time(attempt, retry_after)
            if time.monotonic() + wait_time >= deadline:
                break
            logger.warning("retrying %s in %.1fs after %s", mask_sensitive_data(url), wait_time, last_error.code)
            self._sleep(wait_time)

        assert last_error is not None
        raise last_error

    def _get_backoff_time(self, attempt: int, retry_after: str | None) -> float:
        """Exponential backoff with jitter, or the server's Retry-After when given."""
        if retry_after and self.retry_config.respect_retry_after:
            try:
                return min(float(retry_after), self.retry_config.max_backoff)
            except ValueError:
                pass  # HTTP-date form: fall through to exponential backoff

        base_wait = self.retry_config.backoff_factor**attempt
        jitter_range = base_wait * self.retry_config.jitter
        wait_time = base_wait + random.uniform(-jitter_range, jitter_range)
        return min(wait_time, self.retry_config.max_backoff)

    def _parse_error_response(self, url: str, response: httpx.Response) -> ZenError:
        status = response.status_code
        name = self.descriptor.name
        if status == 401:
            return NotAuthenticated(f"{name} rejected the request for {url}", details="run: zen auth login")
        if status == 403:
            if response.headers.get("X-RateLimit-Remaining") == "0":
                return RateLimited(f"{name} API rate limit exhausted", retry_after=self._seconds_until_reset())
            return Forbidden(f"access to {url} is forbidden")
        if status == 404:
            return NotFound(f"{url} not found on {name}")
        if status == 429:
            return RateLimited(f"{name} API rate limit exceeded", retry_after=_int_header(response, "Retry-After"))
        return NetworkError(f"{name} returned HTTP {status} for {url}")

    # -----------------------------------------------------------------------
    # Rate-limit accounting
    # -----------------------------------------------------------------------

    def _record_rate_limit(self, response: httpx.Response) -> None:
        limit = _int_header(response, "X-RateLimit-Limit", "RateLimit-Limit")
        remaining = _int_header(response, "X-RateLimit-Remaining", "RateLimit-Remaining")
        reset = _int_header(response, "X-RateLimit-Reset", "RateLimit-Reset")
        if limit is None and remaining is None and reset is None:
            return
        info = RateLimitInfo(
            limit=limit,
            remaining=remaining,
            reset=datetime.fromtimestamp(reset, tz=timezone.utc) if reset is not None else None,
        )
        with self._rate_lock:
            self._rate_limit = info
        logger.debug("rate limit: %s/%s remaining", remaining, limit)

    def _seconds_until_reset(self) -> int | None:
        reset = self.rate_limit.reset
        if reset is None:
            return None
        return max(0, int((reset - datetime.now(timezone.utc)).total_seconds()))


def _int_header(response: httpx.Response, *names: str) -> int | None:
    for name in names:
        value = response.headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                continue
    return None
