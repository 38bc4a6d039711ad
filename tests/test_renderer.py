"""Tests for rendering assets into task directories."""

import stat
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from zen.errors import AlreadyExists, AssetUnknown, NotFound, SchemaError, TaskManifestMissing
from zen.models import AssetContent, AssetMetadata, ExternalSnapshot, SnapshotTaskData
from zen.renderer import (
    TaskRenderer,
    build_variables,
    find_task_manifest,
    levenshtein,
    load_snapshots,
    load_task_manifest,
    map_priority,
    map_status,
    map_type,
    resolve_output_path,
    suggest_commands,
)
from zen.templates.engine import TemplateEngine

_DESIGN_BODY = b"# {{TASK_TITLE}}\n**Owner:** {{OWNER_NAME}}"

_FEATURE_SPEC = AssetMetadata(
    name="feature-spec",
    command="feature-spec",
    path="templates/feature-spec.md.tmpl",
    workflow_stages=["04-design"],
)


def _mock_client(body: bytes = _DESIGN_BODY, metadata: AssetMetadata = _FEATURE_SPEC) -> MagicMock:
    client = MagicMock()
    client.lookup.return_value = metadata
    client.get.return_value = AssetContent(metadata=metadata, body=body, cached=True, checksum="sha256:" + "0" * 64)
    client.commands.return_value = ["feature-spec", "tech-spec", "user-story"]
    return client


def _renderer(client: MagicMock, cwd: Path, now: datetime) -> TaskRenderer:
    return TaskRenderer(client, TemplateEngine(client=client), cwd=cwd, clock=lambda: now)


def _write_snapshot(task_dir: Path, source: str, **task_data) -> None:
    snapshot = ExternalSnapshot(
        external_system=source,
        external_id=f"{source.upper()}-7",
        fetched_at=datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc),
        task_data=SnapshotTaskData(**task_data),
    )
    folder = task_dir / "metadata"
    folder.mkdir(exist_ok=True)
    (folder / f"{source}.json").write_text(snapshot.model_dump_json())


class TestVocabularyMapping:
    @pytest.mark.parametrize(
        "external, expected",
        [
            ("Open", "proposed"),
            ("To Do", "proposed"),
            ("In Progress", "in_progress"),
            ("Done", "completed"),
            ("closed", "completed"),
            ("Blocked", "blocked"),
            ("In Review", "in_review"),
        ],
    )
    def test_status(self, external: str, expected: str) -> None:
        assert map_status(external) == expected

    @pytest.mark.parametrize(
        "external, expected",
        [
            ("Highest", "P0"),
            ("Critical", "P0"),
            ("High", "P1"),
            ("Medium", "P2"),
            ("Low", "P3"),
            ("p1", "P1"),
            ("whenever", "P2"),
            (None, "P2"),
            (1, "P0"),
            (2, "P1"),
            (4, "P3"),
            (0, "P2"),
        ],
    )
    def test_priority(self, external: object, expected: str) -> None:
        assert map_priority(external) == expected

    @pytest.mark.parametrize(
        "external, expected",
        [
            ("User Story", "story"),
            ("Bug", "bug"),
            ("Defect", "bug"),
            ("Epic", "epic"),
            ("Spike", "spike"),
            ("Task", "task"),
            ("Improvement", "task"),
        ],
    )
    def test_type(self, external: str, expected: str) -> None:
        assert map_type(external) == expected

    def test_mapped_values_stay_in_vocabulary(self) -> None:
        priorities = {"P0", "P1", "P2", "P3"}
        for value in ("Highest", "High", "Medium", "Low", "Lowest", "urgent", "", "???", 3, 99):
            assert map_priority(value) in priorities


class TestSuggestions:
    def test_levenshtein(self) -> None:
        assert levenshtein("kitten", "sitting") == 3
        assert levenshtein("", "abc") == 3
        assert levenshtein("same", "same") == 0

    def test_closest_first(self) -> None:
        commands = ["feature-spec", "tech-spec", "user-story", ""]
        assert suggest_commands("spec", commands) == ["tech-spec", "feature-spec"]

    def test_limit_and_no_match(self) -> None:
        commands = [f"spec-{i}" for i in range(10)]
        assert len(suggest_commands("spec", commands)) == 5
        assert suggest_commands("zzz", commands) == []

    def test_query_must_be_inside_command(self) -> None:
        commands = ["spec", "Tech-Spec", "plan"]
        assert suggest_commands("SPEC", commands) == ["spec", "Tech-Spec"]
        assert suggest_commands("tech-spec-v2", commands) == []


class TestTaskManifest:
    def test_found_from_subdirectory(self, task_dir: Path) -> None:
        nested = task_dir / "design" / "drafts"
        nested.mkdir(parents=True)
        assert find_task_manifest(nested) == (task_dir / "manifest.yaml").resolve()

    def test_missing(self, tmp_path: Path) -> None:
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        with pytest.raises(TaskManifestMissing):
            find_task_manifest(elsewhere)

    def test_loaded(self, task_dir: Path) -> None:
        directory, manifest = load_task_manifest(task_dir)
        assert directory == task_dir.resolve()
        assert manifest.task.id == "ZEN-001"
        assert manifest.schema_version == "1.0"
        assert manifest.dates.created == "2025-03-01T10:00:00Z"

    @pytest.mark.parametrize(
        "content, error",
        [
            ("task: [unclosed", SchemaError),
            ("- a list\n", SchemaError),
            ("dates:\n  created: not-a-date\n", SchemaError),
            ("task:\n  title: no id\n", TaskManifestMissing),
        ],
    )
    def test_invalid(self, tmp_path: Path, content: str, error: type[Exception]) -> None:
        (tmp_path / "manifest.yaml").write_text(content)
        with pytest.raises(error):
            load_task_manifest(tmp_path)


class TestSnapshots:
    def test_sorted_by_source(self, task_dir: Path) -> None:
        _write_snapshot(task_dir, "linear", title="L")
        _write_snapshot(task_dir, "github", title="G")
        assert [s.external_system for s in load_snapshots(task_dir)] == ["github", "linear"]

    def test_none_stored(self, task_dir: Path) -> None:
        assert load_snapshots(task_dir) == []

    def test_unreadable(self, task_dir: Path) -> None:
        (task_dir / "metadata").mkdir()
        (task_dir / "metadata" / "jira.json").write_text("{not json")
        with pytest.raises(SchemaError):
            load_snapshots(task_dir)


class TestBuildVariables:
    def test_manifest_over_defaults(self, task_dir: Path, fixed_now: datetime) -> None:
        _, manifest = load_task_manifest(task_dir)
        variables = build_variables(manifest, now=fixed_now)
        assert variables["CURRENT_DATE"] == "2025-03-14"
        assert variables["CURRENT_DATETIME"] == "2025-03-14 09:30:00"
        assert variables["TASK_STATUS"] == "in_progress"
        assert variables["PRIORITY"] == "P1"
        assert variables["TEAM_MEMBERS"] == ["samr", "lee"]
        assert variables["EPIC"] == "ZEN-EPIC-9"
        assert "SIZE" not in variables
        assert "STORY_POINTS" not in variables

    def test_precedence(self, task_dir: Path, fixed_now: datetime) -> None:
        _write_snapshot(task_dir, "jira", title="From Jira", status="Done", priority="Highest", type="Bug")
        _, manifest = load_task_manifest(task_dir)
        variables = build_variables(manifest, load_snapshots(task_dir), {"PRIORITY": "P3"}, now=fixed_now)

        assert variables["TASK_TITLE"] == "From Jira"
        assert variables["TASK_STATUS"] == "completed"
        assert variables["TASK_TYPE"] == "bug"
        assert variables["PRIORITY"] == "P3"
        assert variables["JIRA_ID"] == "JIRA-7"
        assert variables["JIRA_STATUS"] == "Done"
        assert variables["JIRA_FETCHED_AT"] == "2025-03-10T12:00:00+00:00"


class TestResolveOutputPath:
    def test_stage_directory(self, tmp_path: Path) -> None:
        assert resolve_output_path(tmp_path, _FEATURE_SPEC) == tmp_path / "design" / "feature-spec.md"

    def test_declared_file_and_format(self, tmp_path: Path) -> None:
        asset = AssetMetadata(name="plan", path="p", format="yaml")
        assert resolve_output_path(tmp_path, asset) == tmp_path / "plan.yaml"
        declared = AssetMetadata(name="r", path="p", output_file="notes.md", workflow_stages=["02-discover"])
        assert resolve_output_path(tmp_path, declared) == tmp_path / "research" / "notes.md"

    def test_explicit_output(self, tmp_path: Path) -> None:
        assert resolve_output_path(tmp_path, _FEATURE_SPEC, "out/x.md") == tmp_path / "out" / "x.md"
        absolute = tmp_path / "abs.md"
        assert resolve_output_path(tmp_path, _FEATURE_SPEC, absolute) == absolute


class TestTaskRenderer:
    def test_renders_into_stage_directory(self, task_dir: Path, fixed_now: datetime) -> None:
        result = _renderer(_mock_client(), task_dir, fixed_now).render("feature-spec")

        target = task_dir.resolve() / "design" / "feature-spec.md"
        assert result.output_path == str(target)
        assert target.read_text() == "# Add asset sync\n**Owner:** Sam Rivera"
        assert result.bytes_written == len(target.read_bytes())
        assert stat.S_IMODE(target.stat().st_mode) == 0o644
        assert stat.S_IMODE(target.parent.stat().st_mode) == 0o755

    def test_existing_file_needs_force(self, task_dir: Path, fixed_now: datetime) -> None:
        renderer = _renderer(_mock_client(), task_dir, fixed_now)
        renderer.render("feature-spec")
        with pytest.raises(AlreadyExists):
            renderer.render("feature-spec")
        result = renderer.render("feature-spec", force=True, overrides={"OWNER_NAME": "Lee"})
        assert "Lee" in Path(result.output_path).read_text()

    def test_preview_writes_nothing(self, task_dir: Path, fixed_now: datetime) -> None:
        result = _renderer(_mock_client(), task_dir, fixed_now).render("feature-spec", preview=True)
        assert result.previewed is True
        assert result.content.startswith("# Add asset sync")
        assert not (task_dir / "design").exists()

    def test_unknown_command_suggests(self, task_dir: Path, fixed_now: datetime) -> None:
        client = _mock_client()
        client.lookup.side_effect = NotFound("asset 'spec' not found")
        with pytest.raises(AssetUnknown) as exc_info:
            _renderer(client, task_dir, fixed_now).render("spec")
        assert exc_info.value.suggestions == ["tech-spec", "feature-spec"]
        client.get.assert_not_called()

    def test_schema_defaults_applied(self, task_dir: Path, fixed_now: datetime) -> None:
        metadata = AssetMetadata(
            name="review",
            command="review",
            path="templates/review.md.tmpl",
            variables=[{"name": "REVIEWER", "default": "the team"}],
        )
        client = _mock_client(b"Reviewed by {{ REVIEWER }} on {{ CURRENT_DATE }}", metadata)
        result = _renderer(client, task_dir, fixed_now).render("review", output="review.md")
        assert result.content == "Reviewed by the team on 2025-03-14"
        assert (task_dir / "review.md").is_file()

    def test_outside_task_directory(self, tmp_path: Path, fixed_now: datetime) -> None:
        elsewhere = tmp_path / "elsewhere"
        elsewhere.mkdir()
        with pytest.raises(TaskManifestMissing):
            _renderer(_mock_client(), elsewhere, fixed_now).render("feature-spec")

    def test_snapshot_values_reach_template(self, task_dir: Path, fixed_now: datetime) -> None:
        _write_snapshot(task_dir, "github", title="Imported title", external_url="https://github.com/o/r/issues/7")
        client = _mock_client(b"{{ TASK_TITLE }} ({{ GITHUB_URL }})")
        result = _renderer(client, task_dir, fixed_now).render("feature-spec", preview=True)
        assert result.content == "Imported title (https://github.com/o/r/issues/7)"
