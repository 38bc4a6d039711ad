"""Shared test fixtures."""

from datetime import datetime
from pathlib import Path

import pytest
import yaml

import zen.settings as settings_module
from zen.auth.manager import AuthManager
from zen.auth.storage import MemoryStore
from zen.cache import CacheStore
from zen.models import Credential

REPO_URL = "https://github.com/acme/zen-assets"
MANIFEST_URL = "https://api.github.com/repos/acme/zen-assets/contents/manifest.yaml?ref=main"

FEATURE_SPEC_BODY = b"# {{ TASK_TITLE }}\n\nOwner: {{ OWNER_NAME }}\nPriority: {{ PRIORITY }}\n"


def asset_url(path: str, branch: str = "main") -> str:
    return f"https://api.github.com/repos/acme/zen-assets/contents/{path}?ref={branch}"


def manifest_yaml(*assets: dict, version: str = "1.0.0") -> bytes:
    doc = {"schema_version": "1.0", "version": version, "assets": list(assets)}
    return yaml.safe_dump(doc, sort_keys=False).encode()


def asset_entry(name: str, **fields) -> dict:
    entry = {
        "name": name,
        "command": name,
        "type": "template",
        "category": "planning",
        "description": f"{name} template",
        "tags": ["planning"],
        "path": f"templates/{name}.md.tmpl",
        "format": "markdown",
    }
    entry.update(fields)
    return entry


class FakeClock:
    """Wall clock the tests advance by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_lru_cache():
    settings_module._load_toml.cache_clear()
    yield
    settings_module._load_toml.cache_clear()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's real config and tokens out of every test."""
    monkeypatch.setattr(settings_module, "CONFIG_PATH", tmp_path / "home" / "config.toml")
    monkeypatch.setattr(settings_module, "PROJECT_CONFIG_PATH", tmp_path / "project" / "config.toml")
    for name in (
        "ZEN_CONFIG",
        "ZEN_GITHUB_TOKEN",
        "GITHUB_TOKEN",
        "GH_TOKEN",
        "ZEN_GITLAB_TOKEN",
        "GITLAB_TOKEN",
        "GL_TOKEN",
        "ZEN_JIRA_TOKEN",
        "JIRA_TOKEN",
        "ZEN_JIRA_EMAIL",
        "JIRA_EMAIL",
        "ZEN_JIRA_URL",
        "JIRA_URL",
        "ZEN_LINEAR_TOKEN",
        "LINEAR_API_KEY",
        "ZEN_REPOSITORY_URL",
        "ZEN_BRANCH",
        "ZEN_AUTH_PROVIDER",
        "ZEN_DEBUG",
        "ZEN_PROMPT_DISABLED",
        "PROMPT_DISABLED",
        "NO_COLOR",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path: Path, clock: FakeClock) -> CacheStore:
    return CacheStore(tmp_path / "library", max_size_bytes=1024 * 1024, default_ttl=3600, clock=clock)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def auth(memory_store: MemoryStore) -> AuthManager:
    memory_store.put(Credential(provider="github", secret="ghp_testtoken1234567890"))
    return AuthManager(memory_store, prompt_disabled=True)


@pytest.fixture
def anonymous_auth(memory_store: MemoryStore) -> AuthManager:
    return AuthManager(memory_store, prompt_disabled=True)


@pytest.fixture
def fixed_now() -> datetime:
    return datetime(2025, 3, 14, 9, 30, 0)


@pytest.fixture
def task_dir(tmp_path: Path) -> Path:
    """A task directory with a populated manifest.yaml."""
    directory = tmp_path / "work" / "ZEN-001"
    directory.mkdir(parents=True)
    manifest = {
        "schema_version": 1.0,
        "task": {"id": "ZEN-001", "title": "Add asset sync", "type": "story", "status": "in_progress", "priority": "P1"},
        "owner": {"name": "Sam Rivera", "email": "sam@example.com", "github": "samr"},
        "team": {"name": "Platform", "stream": "core", "members": ["samr", "lee"]},
        "dates": {"created": "2025-03-01T10:00:00Z", "target": "2025-04-01"},
        "workflow": {"current_stage": "04-design", "completed_stages": ["01-align", "02-discover", "03-prioritize"]},
        "labels": ["sync"],
        "custom_fields": {"epic": "ZEN-EPIC-9"},
    }
    (directory / "manifest.yaml").write_text(yaml.safe_dump(manifest))
    return directory
