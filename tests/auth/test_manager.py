"""Tests for AuthManager: acquisition order, reads and validation."""

import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from pytest_httpx import HTTPXMock

from zen.auth.manager import AuthManager
from zen.auth.storage import MemoryStore
from zen.errors import (
    Forbidden,
    InvalidArgument,
    NotAuthenticated,
    NotFound,
    PromptDisabled,
    RateLimited,
)
from zen.models import Credential
from zen.settings import AuthConfig

_GITHUB_TOKEN = "ghp_explicitexplicit1234"


class _Prompt:
    """Records prompt labels and answers from a queue."""

    def __init__(self, *answers: str) -> None:
        self.answers = list(answers)
        self.labels: list[str] = []

    def __call__(self, label: str, hidden: bool) -> str:
        self.labels.append(label)
        return self.answers.pop(0)


def _manager(store: MemoryStore | None = None, **kwargs) -> AuthManager:
    return AuthManager(store or MemoryStore(), **kwargs)


class TestAuthenticatePrecedence:
    def test_explicit_token_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("ghp_fromfile000000000")
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_fromenv0000000000")
        prompt = _Prompt("ghp_fromprompt00000000")
        manager = _manager(prompt=prompt)

        credential = manager.authenticate("github", token=_GITHUB_TOKEN, token_file=token_file)

        assert credential.secret.get_secret_value() == _GITHUB_TOKEN
        assert prompt.labels == []

    def test_file_beats_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("ghp_fromfile000000000\n")
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_fromenv0000000000")
        credential = _manager().authenticate("github", token_file=token_file)
        assert credential.secret.get_secret_value() == "ghp_fromfile000000000"

    def test_configured_token_file(self, tmp_path: Path) -> None:
        token_file = tmp_path / "token"
        token_file.write_text("ghp_configured00000000")
        manager = _manager(config=AuthConfig(token_file=token_file))
        assert manager.authenticate("github").secret.get_secret_value() == "ghp_configured00000000"

    def test_environment_beats_prompt(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GH_TOKEN", "ghp_fromenv0000000000")
        prompt = _Prompt("ghp_fromprompt00000000")
        credential = _manager(prompt=prompt).authenticate("github")
        assert credential.secret.get_secret_value() == "ghp_fromenv0000000000"
        assert prompt.labels == []

    def test_environment_order(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GITHUB_TOKEN", "ghp_second00000000000")
        monkeypatch.setenv("ZEN_GITHUB_TOKEN", "ghp_first000000000000")
        assert _manager().authenticate("github").secret.get_secret_value() == "ghp_first000000000000"

    def test_prompt_is_last_resort(self) -> None:
        prompt = _Prompt("ghp_fromprompt00000000")
        store = MemoryStore()
        _manager(store, prompt=prompt).authenticate("github")
        assert prompt.labels == ["GitHub token"]
        assert store.get("github").secret.get_secret_value() == "ghp_fromprompt00000000"

    def test_prompt_disabled_fails(self) -> None:
        with pytest.raises(PromptDisabled) as exc_info:
            _manager(prompt_disabled=True).authenticate("github")
        assert "GITHUB_TOKEN" in (exc_info.value.details or "")

    def test_missing_explicit_token_file(self, tmp_path: Path) -> None:
        with pytest.raises(NotFound):
            _manager(prompt_disabled=True).authenticate("github", token_file=tmp_path / "absent")

    def test_malformed_token_rejected(self) -> None:
        with pytest.raises(InvalidArgument, match="GitHub tokens start with"):
            _manager().authenticate("github", token="not-a-token")

    def test_empty_prompt_answer_rejected(self) -> None:
        with pytest.raises(InvalidArgument, match="cannot be empty"):
            _manager(prompt=_Prompt("  ")).authenticate("github")

    def test_unknown_provider(self) -> None:
        with pytest.raises(InvalidArgument, match="unknown provider"):
            _manager().authenticate("bitbucket", token="x" * 20)


class TestJiraEmail:
    def test_email_argument(self) -> None:
        credential = _manager().authenticate("jira", token="jira-api-token", email="sam@example.com")
        assert credential.email == "sam@example.com"

    def test_email_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("JIRA_EMAIL", "env@example.com")
        assert _manager().authenticate("jira", token="jira-api-token").email == "env@example.com"

    def test_email_prompted(self) -> None:
        prompt = _Prompt("prompted@example.com")
        assert _manager(prompt=prompt).authenticate("jira", token="jira-api-token").email == "prompted@example.com"
        assert prompt.labels == ["Jira email"]

    def test_email_required_when_prompt_disabled(self) -> None:
        with pytest.raises(PromptDisabled):
            _manager(prompt_disabled=True).authenticate("jira", token="jira-api-token")


class TestReads:
    def test_get_credentials_returns_secret(self, auth: AuthManager) -> None:
        assert auth.get_credentials("github") == "ghp_testtoken1234567890"

    def test_not_authenticated(self) -> None:
        with pytest.raises(NotAuthenticated) as exc_info:
            _manager().get_credential("linear")
        assert exc_info.value.details == "run: zen auth login linear"

    def test_expired_credential_removed(self) -> None:
        store = MemoryStore()
        past = datetime.now(timezone.utc) - timedelta(days=1)
        store.put(Credential(provider="github", secret="ghp_old", expires_at=past))
        manager = _manager(store)
        with pytest.raises(NotAuthenticated, match="expired"):
            manager.get_credential("github")
        assert store.list_providers() == []

    def test_is_authenticated_never_raises(self, auth: AuthManager) -> None:
        assert auth.is_authenticated("github") is True
        assert auth.is_authenticated("gitlab") is False

    def test_environment_credential(self, monkeypatch: pytest.MonkeyPatch) -> None:
        manager = _manager()
        assert manager.environment_credential("linear") is None
        monkeypatch.setenv("LINEAR_API_KEY", "lin_api_fromenv")
        credential = manager.environment_credential("linear")
        assert credential is not None
        assert credential.secret.get_secret_value() == "lin_api_fromenv"
        assert manager.list_providers() == []

    def test_delete_and_list(self, auth: AuthManager) -> None:
        assert auth.list_providers() == ["github"]
        auth.delete("github")
        assert auth.list_providers() == []

    def test_provider_info_hides_secret(self, auth: AuthManager) -> None:
        info = auth.provider_info("github")
        assert info.authenticated is True
        assert info.name == "GitHub"
        assert "GITHUB_TOKEN" in info.env_vars
        assert "ghp_testtoken" not in info.model_dump_json()
        assert auth.provider_info("jira").authenticated is False


class TestValidate:
    def test_github_identity(self, auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url="https://api.github.com/user", json={"login": "samr", "id": 1})
        assert auth.validate_credentials("github")["login"] == "samr"
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "Bearer ghp_testtoken1234567890"

    def test_rejected_credential(self, auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url="https://api.github.com/user", status_code=401)
        with pytest.raises(NotAuthenticated, match="rejected"):
            auth.validate_credentials("github")

    def test_forbidden(self, auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url="https://api.github.com/user", status_code=403)
        with pytest.raises(Forbidden):
            auth.validate_credentials("github")

    def test_rate_limited(self, auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url="https://api.github.com/user", status_code=429, headers={"Retry-After": "60"})
        with pytest.raises(RateLimited) as exc_info:
            auth.validate_credentials("github")
        assert exc_info.value.retry_after == 60

    def test_malformed_identity(self, auth: AuthManager, httpx_mock: HTTPXMock) -> None:
        httpx_mock.add_response(url="https://api.github.com/user", json={"message": "ok"})
        with pytest.raises(NotAuthenticated, match="malformed"):
            auth.validate_credentials("github")

    def test_linear_graphql_viewer(self, memory_store: MemoryStore, httpx_mock: HTTPXMock) -> None:
        memory_store.put(Credential(provider="linear", secret="lin_api_abcdefgh"))
        httpx_mock.add_response(
            url="https://api.linear.app/graphql",
            method="POST",
            json={"data": {"viewer": {"id": "u1", "name": "Sam"}}},
        )
        identity = AuthManager(memory_store).validate_credentials("linear")
        assert identity["viewer"]["name"] == "Sam"
        request = httpx_mock.get_request()
        assert request is not None
        assert request.headers["Authorization"] == "lin_api_abcdefgh"

    def test_jira_basic_auth(
        self, memory_store: MemoryStore, httpx_mock: HTTPXMock, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("JIRA_URL", "https://acme.atlassian.net/")
        memory_store.put(Credential(provider="jira", secret="jira-token", email="sam@example.com"))
        httpx_mock.add_response(url="https://acme.atlassian.net/rest/api/3/myself", json={"accountId": "abc"})
        AuthManager(memory_store).validate_credentials("jira")
        request = httpx_mock.get_request()
        assert request is not None
        expected = base64.b64encode(b"sam@example.com:jira-token").decode()
        assert request.headers["Authorization"] == f"Basic {expected}"

    def test_requires_stored_credential(self) -> None:
        with pytest.raises(NotAuthenticated):
            _manager().validate_credentials("github")
