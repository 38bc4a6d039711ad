"""Abstract base class for issue trackers that feed task snapshots."""

import json
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from zen.auth.manager import AuthManager
from zen.auth.providers import USER_AGENT, ProviderDescriptor, get_provider
from zen.errors import NetworkError, NotAuthenticated, NotFound, Timeout
from zen.fs import atomic_write, ensure_dir
from zen.logging import get_logger, mask_sensitive_data
from zen.models import Credential, ExternalSnapshot

logger = get_logger("trackers")

SNAPSHOT_DIR = "metadata"


class IssueTracker(ABC):
    source: str = ""

    def __init__(self, auth: AuthManager, timeout: float = 30) -> None:
        self._auth = auth
        self._timeout = timeout
        self.descriptor: ProviderDescriptor = get_provider(self.source)

    @abstractmethod
    def fetch(self, external_id: str) -> ExternalSnapshot: ...

    def _credential(self) -> Credential:
        try:
            return self._auth.get_credential(self.source)
        except NotAuthenticated:
            credential = self._auth.environment_credential(self.source)
            if credential is None:
                raise
            return credential

    def _headers(self) -> dict[str, str]:
        credential = self._credential()
        return {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            **self.descriptor.auth_headers(credential.secret.get_secret_value(), credential.email),
        }

    def _request(self, method: str, url: str, **kwargs) -> dict:
        try:
            response = httpx.request(method, url, headers=self._headers(), timeout=self._timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise Timeout(f"{self.descriptor.name} did not respond within {self._timeout}s") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"could not reach {self.descriptor.name}", details=str(exc)) from exc

        logger.debug("%s %s -> %d", method, mask_sensitive_data(url), response.status_code)
        if response.status_code == 401:
            raise NotAuthenticated(
                f"{self.descriptor.name} API returned 401", details=f"run: zen auth login {self.source}"
            )
        if response.status_code == 404:
            raise NotFound(f"{url} not found on {self.descriptor.name}")
        if response.status_code >= 400:
            raise NetworkError(f"{self.descriptor.name} returned HTTP {response.status_code} for {url}")
        return response.json()


def snapshot_path(task_dir: Path, source: str) -> Path:
    return task_dir / SNAPSHOT_DIR / f"{source}.json"


def save_snapshot(task_dir: Path, snapshot: ExternalSnapshot) -> Path:
    """Write ``metadata/<source>.json`` under the task directory, replacing any earlier snapshot."""
    target = snapshot_path(task_dir, snapshot.external_system)
    ensure_dir(target.parent)
    payload = json.dumps(snapshot.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"
    atomic_write(target, payload, mode=0o644)
    logger.info("saved %s snapshot of %s", snapshot.external_system, snapshot.external_id)
    return target
