"""
Task renderer: turns an asset into a file inside a task directory.

Variables are merged in a fixed order, later sources winning:
defaults, the task's ``manifest.yaml``, stored external-source
snapshots (``metadata/<source>.json``), then caller overrides.
"""

import json
from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from zen.client import AssetClient
from zen.errors import AlreadyExists, AssetUnknown, NotFound, SchemaError, TaskManifestMissing
from zen.fs import atomic_write, ensure_dir
from zen.logging import get_logger
from zen.models import AssetMetadata, ExternalSnapshot, RenderResult, TaskManifest
from zen.templates.engine import TemplateEngine
from zen.templates.functions import DATE_LAYOUT, DATETIME_LAYOUT, stage_directory
from zen.trackers.base import SNAPSHOT_DIR

logger = get_logger("renderer")

TASK_MANIFEST = "manifest.yaml"
MAX_SUGGESTIONS = 5

_EXTENSIONS = {"markdown": ".md", "md": ".md", "yaml": ".yaml", "yml": ".yaml", "json": ".json"}

_STATUS_MAP = {
    "open": "proposed",
    "new": "proposed",
    "to do": "proposed",
    "todo": "proposed",
    "in progress": "in_progress",
    "doing": "in_progress",
    "done": "completed",
    "closed": "completed",
    "resolved": "completed",
    "blocked": "blocked",
}

_PRIORITY_MAP = {
    "highest": "P0",
    "critical": "P0",
    "urgent": "P0",
    "high": "P1",
    "medium": "P2",
    "low": "P3",
    "lowest": "P3",
}

# Linear reports priority as an integer: 0 none, 1 urgent, 2 high, 3 medium, 4 low
_NUMERIC_PRIORITY = {0: "P2", 1: "P0", 2: "P1", 3: "P2", 4: "P3"}

_TYPE_MAP = {
    "story": "story",
    "user story": "story",
    "bug": "bug",
    "defect": "bug",
    "epic": "epic",
    "initiative": "epic",
    "spike": "spike",
    "research": "spike",
}


# ---------------------------------------------------------------------------
# Vocabulary mapping
# ---------------------------------------------------------------------------


def map_status(status: str) -> str:
    """External status onto the zen set; unknown values pass through as lower_snake."""
    normalized = status.strip().lower()
    if normalized in _STATUS_MAP:
        return _STATUS_MAP[normalized]
    return normalized.replace(" ", "_")


def map_priority(priority: str | int | None) -> str:
    if priority is None:
        return "P2"
    if isinstance(priority, int) and not isinstance(priority, bool):
        return _NUMERIC_PRIORITY.get(priority, "P2")
    normalized = str(priority).strip().lower()
    if normalized.upper() in ("P0", "P1", "P2", "P3"):
        return normalized.upper()
    return _PRIORITY_MAP.get(normalized, "P2")


def map_type(issue_type: str) -> str:
    return _TYPE_MAP.get(issue_type.strip().lower(), "task")


# ---------------------------------------------------------------------------
# Suggestions
# ---------------------------------------------------------------------------


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + (char_a != char_b)))
        previous = current
    return previous[-1]


def suggest_commands(command: str, commands: list[str], limit: int = MAX_SUGGESTIONS) -> list[str]:
    """Commands that contain ``command`` (case-insensitive), closest first."""
    wanted = command.lower()
    similar = [c for c in commands if c and wanted in c.lower()]
    similar.sort(key=lambda c: (levenshtein(wanted, c.lower()), c))
    return similar[:limit]


# ---------------------------------------------------------------------------
# Task directory access
# ---------------------------------------------------------------------------


def find_task_manifest(start: Path | None = None) -> Path:
    """Nearest ``manifest.yaml`` at or above ``start``."""
    current = (start or Path.cwd()).resolve()
    for directory in (current, *current.parents):
        candidate = directory / TASK_MANIFEST
        if candidate.is_file():
            return candidate
    raise TaskManifestMissing(
        f"no task {TASK_MANIFEST} found in {current} or its parents", details="run this inside a task directory"
    )


def load_task_manifest(start: Path | None = None) -> tuple[Path, TaskManifest]:
    """Return ``(task_dir, manifest)`` for the task enclosing ``start``."""
    path = find_task_manifest(start)
    try:
        doc = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise SchemaError(f"{path} is not valid YAML", details=str(exc)) from exc
    if not isinstance(doc, dict):
        raise SchemaError(f"{path} must be a YAML mapping")
    try:
        manifest = TaskManifest.model_validate(doc)
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
        raise SchemaError(f"{path} is invalid: {problems}") from exc
    if not manifest.task.id:
        raise TaskManifestMissing(f"{path} does not describe a task (task.id is missing)")
    return path.parent, manifest


def load_snapshots(task_dir: Path) -> list[ExternalSnapshot]:
    """Stored snapshots, sorted by source name."""
    folder = task_dir / SNAPSHOT_DIR
    if not folder.is_dir():
        return []
    snapshots = []
    for path in sorted(folder.glob("*.json")):
        try:
            snapshots.append(ExternalSnapshot.model_validate(json.loads(path.read_text(encoding="utf-8"))))
        except (ValueError, ValidationError) as exc:
            raise SchemaError(f"snapshot {path} is unreadable", details=str(exc)) from exc
    return sorted(snapshots, key=lambda s: s.external_system)


# ---------------------------------------------------------------------------
# Variables
# ---------------------------------------------------------------------------


def default_variables(now: datetime) -> dict[str, Any]:
    return {
        "CURRENT_DATE": now.strftime(DATE_LAYOUT),
        "CURRENT_DATETIME": now.strftime(DATETIME_LAYOUT),
        "TASK_STATUS": "proposed",
        "PRIORITY": "P2",
        "TASK_TYPE": "task",
    }


def manifest_variables(manifest: TaskManifest) -> dict[str, Any]:
    task, dates = manifest.task, manifest.dates
    variables: dict[str, Any] = {
        "TASK_ID": task.id,
        "TASK_TITLE": task.title,
        "TASK_TYPE": task.type,
        "TASK_STATUS": task.status,
        "PRIORITY": task.priority,
        "SIZE": task.size,
        "STORY_POINTS": task.points,
        "OWNER_NAME": manifest.owner.name,
        "OWNER_EMAIL": manifest.owner.email,
        "GITHUB_USERNAME": manifest.owner.github,
        "TEAM_NAME": manifest.team.name,
        "STREAM_TYPE": manifest.team.stream,
        "TEAM_MEMBERS": list(manifest.team.members),
        "CREATED_DATE": dates.created,
        "STARTED_DATE": dates.started,
        "TARGET_DATE": dates.target,
        "COMPLETED_DATE": dates.completed,
        "LAST_UPDATED": dates.last_updated,
        "CURRENT_STAGE": manifest.workflow.current_stage,
        "COMPLETED_STAGES": list(manifest.workflow.completed_stages),
        "WORKFLOW_STAGES": list(manifest.workflow.stages),
        "BUSINESS_CRITERIA": list(manifest.success_criteria.business),
        "TECHNICAL_CRITERIA": list(manifest.success_criteria.technical),
        "UX_CRITERIA": list(manifest.success_criteria.ux),
        "UPSTREAM_DEPS": list(manifest.dependencies.upstream),
        "DOWNSTREAM_DEPS": list(manifest.dependencies.downstream),
        "RISK_LEVEL": manifest.risk.level,
        "RISK_FACTORS": list(manifest.risk.factors),
        "LABELS": list(manifest.labels),
        "TAGS": list(manifest.tags),
        "CUSTOM_FIELDS": dict(manifest.custom_fields),
    }
    for key, value in manifest.custom_fields.items():
        variables[str(key).upper()] = value
    # Unset values must not shadow the defaults underneath
    return {key: value for key, value in variables.items() if value not in (None, "")}


def snapshot_variables(snapshot: ExternalSnapshot) -> dict[str, Any]:
    data = snapshot.task_data
    prefix = snapshot.external_system.upper()
    variables: dict[str, Any] = {
        f"{prefix}_ID": snapshot.external_id,
        f"{prefix}_URL": data.external_url,
        f"{prefix}_STATUS": data.status,
        f"{prefix}_PRIORITY": data.priority if data.priority is not None else "",
        f"{prefix}_ASSIGNEE": data.assignee or "",
        f"{prefix}_FETCHED_AT": snapshot.fetched_at.isoformat(),
    }
    if data.title:
        variables["TASK_TITLE"] = data.title
    if data.type:
        variables["TASK_TYPE"] = map_type(data.type)
    if data.status:
        variables["TASK_STATUS"] = map_status(data.status)
    if data.priority not in (None, ""):
        variables["PRIORITY"] = map_priority(data.priority)
    return variables


def build_variables(
    manifest: TaskManifest,
    snapshots: list[ExternalSnapshot] | None = None,
    overrides: Mapping[str, Any] | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    variables = default_variables(now or datetime.now())
    variables.update(manifest_variables(manifest))
    for snapshot in sorted(snapshots or [], key=lambda s: s.external_system):
        variables.update(snapshot_variables(snapshot))
    variables.update(overrides or {})
    return variables


def output_extension(format_name: str) -> str:
    return _EXTENSIONS.get(format_name.strip().lower(), ".md")


def resolve_output_path(task_dir: Path, asset: AssetMetadata, output: str | Path | None = None) -> Path:
    """Explicit ``output`` (relative to the task), else the declared file, else ``<command><ext>``."""
    if output:
        path = Path(output)
        return path if path.is_absolute() else task_dir / path
    subdir = stage_directory(asset.workflow_stages[0]) if asset.workflow_stages else ""
    filename = asset.output_file or f"{asset.command or asset.name}{output_extension(asset.format)}"
    base = task_dir / subdir if subdir else task_dir
    return base / filename


class TaskRenderer:
    """Renders assets into the task directory enclosing ``cwd``."""

    def __init__(
        self,
        client: AssetClient,
        engine: TemplateEngine,
        cwd: Path | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.client = client
        self.engine = engine
        self.cwd = cwd
        self._clock = clock

    def resolve_asset(self, command: str) -> AssetMetadata:
        try:
            return self.client.lookup(command)
        except NotFound:
            suggestions = suggest_commands(command, self.client.commands())
            raise AssetUnknown(command, suggestions) from None

    def render(
        self,
        command: str,
        output: str | Path | None = None,
        force: bool = False,
        preview: bool = False,
        overrides: Mapping[str, Any] | None = None,
    ) -> RenderResult:
        task_dir, manifest = load_task_manifest(self.cwd)
        asset = self.resolve_asset(command)
        target = resolve_output_path(task_dir, asset, output)
        if target.exists() and not force and not preview:
            raise AlreadyExists(f"{target} already exists", details="use --force to overwrite")

        variables = build_variables(manifest, load_snapshots(task_dir), overrides, now=self._clock())
        binding = self.engine.load_template(asset.name)
        variables = self.engine.apply_defaults(binding, variables)
        content = self.engine.render_template(binding, variables)

        if preview:
            logger.debug("previewed %s for %s", asset.name, manifest.task.id)
            return RenderResult(asset_name=asset.name, output_path=str(target), content=content, previewed=True)

        ensure_dir(target.parent, mode=0o755)
        payload = content.encode("utf-8")
        atomic_write(target, payload, mode=0o644)
        logger.info("rendered %s to %s", asset.name, target)
        return RenderResult(
            asset_name=asset.name, output_path=str(target), content=content, bytes_written=len(payload)
        )
