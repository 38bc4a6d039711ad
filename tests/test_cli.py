"""Smoke tests for all CLI commands using typer CliRunner."""

import json
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from typer.testing import CliRunner

from zen.auth.manager import AuthManager
from zen.auth.storage import MemoryStore
from zen.errors import NotFound, RateLimited
from zen.main import app, parse_vars
from zen.models import (
    AssetContent,
    AssetMetadata,
    AssetPage,
    CacheInfo,
    Credential,
    ExternalSnapshot,
    RateLimitInfo,
    SnapshotTaskData,
    SyncResult,
)

runner = CliRunner()

_FEATURE_SPEC = AssetMetadata(
    name="feature-spec",
    command="feature-spec",
    category="design",
    description="Feature design document",
    tags=["design"],
    path="templates/feature-spec.md.tmpl",
    workflow_stages=["04-design"],
    variables=[{"name": "TASK_TITLE", "required": True}],
)


def _mock_client(body: bytes = b"# {{ TASK_TITLE }}\n") -> MagicMock:
    client = MagicMock()
    client.__enter__.return_value = client
    client.lookup.return_value = _FEATURE_SPEC
    client.get.return_value = AssetContent(
        metadata=_FEATURE_SPEC, body=body, cached=True, cache_age_seconds=12, checksum="sha256:" + "0" * 64
    )
    client.commands.return_value = ["feature-spec", "tech-spec"]
    client.list_assets.return_value = AssetPage(results=[_FEATURE_SPEC], total=3, has_more=True, offset=0, limit=1)
    return client


def _manager(*credentials: Credential) -> AuthManager:
    store = MemoryStore()
    for credential in credentials:
        store.put(credential)
    return AuthManager(store, prompt_disabled=True)


class TestAssets:
    def test_list(self) -> None:
        client = _mock_client()
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "list", "--tag", "design", "--limit", "1"])
        assert result.exit_code == 0
        assert "feature-spec" in result.output
        assert "Showing 1-1 of 3" in result.output
        assert "--offset 1" in result.output
        filters = client.list_assets.call_args.args[0]
        assert filters.tags == ["design"]
        assert filters.limit == 1

    def test_list_empty(self) -> None:
        client = _mock_client()
        client.list_assets.return_value = AssetPage(results=[], total=0, has_more=False)
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "list", "--type", "prompt"])
        assert result.exit_code == 0
        assert "No assets match" in result.output

    def test_info(self) -> None:
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["assets", "info", "feature-spec"])
        assert result.exit_code == 0
        assert "Feature design document" in result.output
        assert "TASK_TITLE*" in result.output

    def test_get_prints_body(self) -> None:
        with patch("zen.main.get_asset_client", return_value=_mock_client(b"hello body\n")):
            result = runner.invoke(app, ["assets", "get", "feature-spec"])
        assert result.exit_code == 0
        assert result.output == "hello body\n"

    def test_get_to_file(self, tmp_path: Path) -> None:
        target = tmp_path / "out" / "spec.md"
        client = _mock_client(b"saved\n")
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "get", "feature-spec", "-o", str(target), "--no-cache"])
        assert result.exit_code == 0
        assert "Wrote feature-spec" in result.output
        assert target.read_bytes() == b"saved\n"
        assert client.get.call_args.args[1].use_cache is False

    def test_get_missing(self) -> None:
        client = _mock_client()
        client.get.side_effect = NotFound("asset 'nope' not found")
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "get", "nope"])
        assert result.exit_code == 1
        assert "✗" in result.output
        assert "not found" in result.output

    def test_sync(self) -> None:
        client = _mock_client()
        client.sync.return_value = SyncResult(status="success", added=2, updated=1, manifest_refreshed=True)
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "sync", "--branch", "develop", "--force"])
        assert result.exit_code == 0
        assert "Synced +2 ~1 -0" in result.output
        request = client.sync.call_args.args[0]
        assert request.branch == "develop"
        assert request.force is True

    def test_sync_up_to_date(self) -> None:
        client = _mock_client()
        client.sync.return_value = SyncResult(status="success")
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "sync"])
        assert result.exit_code == 0
        assert "Manifest is up to date" in result.output

    def test_sync_partial(self) -> None:
        client = _mock_client()
        client.sync.return_value = SyncResult(
            status="partial", added=1, manifest_refreshed=True, error="prefetch failed for 1 asset(s)"
        )
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "sync"])
        assert result.exit_code == 0
        assert "Synced with errors" in result.output

    def test_sync_error(self) -> None:
        client = _mock_client()
        client.sync.return_value = SyncResult(status="error", error="manifest is invalid")
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "sync"])
        assert result.exit_code == 1
        assert "Sync failed: manifest is invalid" in result.output

    def test_sync_rate_limited(self) -> None:
        client = _mock_client()
        client.sync.side_effect = RateLimited("GitHub rate limit exceeded", retry_after=30)
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "sync"])
        assert result.exit_code == 1
        assert "rate limit" in result.output

    def test_status(self) -> None:
        client = _mock_client()
        client.get_cache_info.return_value = CacheInfo(
            cache_path="/tmp/library", total_size_bytes=2048, total_size_mb=0.0, entry_count=4, hit_ratio=0.5
        )
        client.rate_limit = RateLimitInfo(limit=5000, remaining=4999)
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "status"])
        assert result.exit_code == 0
        assert "50%" in result.output
        assert "4999/5000" in result.output

    def test_clear_confirmed(self) -> None:
        client = _mock_client()
        client.clear_cache.return_value = 1
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "clear", "--yes"])
        assert result.exit_code == 0
        assert "Cleared 1 cache entry" in result.output

    def test_clear_declined(self) -> None:
        client = _mock_client()
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["assets", "clear"], input="n\n")
        assert result.exit_code == 2
        client.clear_cache.assert_not_called()


class TestAuth:
    def test_login_with_token(self) -> None:
        manager = _manager()
        with patch("zen.main.get_auth_manager", return_value=manager):
            result = runner.invoke(app, ["auth", "login", "github", "--token", "ghp_clitoken000000000"])
        assert result.exit_code == 0
        assert "Authenticated with GitHub (keychain storage)" in result.output
        assert manager.get_credentials("github") == "ghp_clitoken000000000"

    def test_login_without_prompt_exits_auth(self) -> None:
        with patch("zen.main.get_auth_manager", return_value=_manager()):
            result = runner.invoke(app, ["auth", "login", "github"])
        assert result.exit_code == 4
        assert "GITHUB_TOKEN" in result.output

    def test_login_malformed_token(self) -> None:
        with patch("zen.main.get_auth_manager", return_value=_manager()):
            result = runner.invoke(app, ["auth", "login", "github", "--token", "nope"])
        assert result.exit_code == 1

    def test_status(self) -> None:
        manager = _manager(Credential(provider="github", secret="ghp_secretvalue00000000"))
        with patch("zen.main.get_auth_manager", return_value=manager):
            result = runner.invoke(app, ["auth", "status"])
        assert result.exit_code == 0
        assert "authenticated" in result.output
        assert "Linear" in result.output
        assert "ghp_secretvalue" not in result.output

    def test_logout(self) -> None:
        manager = _manager(Credential(provider="github", secret="ghp_secretvalue00000000"))
        with patch("zen.main.get_auth_manager", return_value=manager):
            result = runner.invoke(app, ["auth", "logout", "github"])
        assert result.exit_code == 0
        assert "Removed github credential" in result.output
        assert manager.list_providers() == []

    def test_validate(self) -> None:
        manager = MagicMock()
        manager.validate_credentials.return_value = {"login": "samr"}
        with patch("zen.main.get_auth_manager", return_value=manager):
            result = runner.invoke(app, ["auth", "validate", "github"])
        assert result.exit_code == 0
        assert "GitHub credential is valid (samr)" in result.output

    def test_validate_without_credential(self) -> None:
        with patch("zen.main.get_auth_manager", return_value=_manager()):
            result = runner.invoke(app, ["auth", "validate", "github"])
        assert result.exit_code == 4
        assert "zen auth login github" in result.output


class TestDraft:
    def test_writes_file(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["draft", "feature-spec"])
        assert result.exit_code == 0
        assert "Created" in result.output
        assert (task_dir / "design" / "feature-spec.md").read_text() == "# Add asset sync\n"

    def test_preview_with_vars(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["draft", "feature-spec", "--preview", "--var", "TASK_TITLE=Override"])
        assert result.exit_code == 0
        assert "--- Preview of feature-spec.md ---" in result.output
        assert "# Override" in result.output
        assert "--- End Preview ---" in result.output
        assert not (task_dir / "design").exists()

    def test_existing_file(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        (task_dir / "design").mkdir()
        (task_dir / "design" / "feature-spec.md").write_text("keep me")
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["draft", "feature-spec"])
        assert result.exit_code == 1
        assert "--force" in result.output
        assert (task_dir / "design" / "feature-spec.md").read_text() == "keep me"

    def test_unknown_command_suggests(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        client = _mock_client()
        client.lookup.side_effect = NotFound("asset 'spec' not found")
        with patch("zen.main.get_asset_client", return_value=client):
            result = runner.invoke(app, ["draft", "spec"])
        assert result.exit_code == 1
        assert "did you mean: tech-spec" in result.output

    def test_outside_task(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        monkeypatch.chdir(elsewhere)
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["draft", "feature-spec"])
        assert result.exit_code == 1
        assert "task directory" in result.output

    def test_bad_var(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        with patch("zen.main.get_asset_client", return_value=_mock_client()):
            result = runner.invoke(app, ["draft", "feature-spec", "--var", "NOEQUALS"])
        assert result.exit_code == 1
        assert "KEY=VALUE" in result.output


class TestTaskSync:
    def test_saves_snapshot(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        tracker = MagicMock()
        tracker.fetch.return_value = ExternalSnapshot(
            external_system="github",
            external_id="acme/zen#42",
            fetched_at=datetime(2025, 3, 10, tzinfo=timezone.utc),
            task_data=SnapshotTaskData(title="Cache offline", status="open", priority="High"),
        )
        with (
            patch("zen.main.get_auth_manager", return_value=_manager()),
            patch("zen.main.get_tracker", return_value=tracker) as get_tracker,
        ):
            result = runner.invoke(app, ["task", "sync", "github", "acme/zen#42"])

        assert result.exit_code == 0
        assert "Synced acme/zen#42 into ZEN-001" in result.output
        assert "status proposed, priority P1" in result.output
        assert get_tracker.call_args.args[0] == "github"
        stored = json.loads((task_dir / "metadata" / "github.json").read_text())
        assert stored["task_data"]["title"] == "Cache offline"

    def test_tracker_not_authenticated(self, task_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(task_dir)
        with patch("zen.main.get_auth_manager", return_value=_manager()):
            result = runner.invoke(app, ["task", "sync", "github", "acme/zen#42"])
        assert result.exit_code == 4


class TestConfig:
    def test_set_then_show(self) -> None:
        result = runner.invoke(app, ["config", "set", "assets.branch", "develop"])
        assert result.exit_code == 0
        assert "Set assets.branch = develop" in result.output

        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "develop" in result.output

    def test_set_unknown_key(self) -> None:
        result = runner.invoke(app, ["config", "set", "assets.colour", "blue"])
        assert result.exit_code == 1
        assert "unknown configuration key" in result.output

    def test_show_masks_secrets(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ZEN_AUTH__ENCRYPTION_KEY", "correct-horse-battery")
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "correct-horse-battery" not in result.output
        assert "...tery" in result.output


def test_parse_vars() -> None:
    assert parse_vars(["A=1", "B=x=y", " C =  "]) == {"A": "1", "B": "x=y", "C": "  "}
    assert parse_vars(None) == {}
