"""Shared pydantic models: the contract between the cache, client, renderer and CLI."""

from datetime import date, datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

AssetType = Literal["template", "prompt", "mcp", "schema"]


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class Credential(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    secret: SecretStr
    email: str | None = None  # basic-auth username (jira)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class ProviderStatus(BaseModel):
    """What `zen auth status` shows for a provider. Never carries the secret."""

    model_config = ConfigDict(frozen=True)

    provider: str
    name: str
    auth_kind: str
    base_url: str
    env_vars: list[str]
    authenticated: bool
    email: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------


class VariableSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: str = ""
    validation: str | None = None  # e.g. "regex:^[A-Z]+$", "range:1-10", "enum:a|b"


class AssetMetadata(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    command: str = ""
    type: AssetType = "template"
    category: str = ""
    description: str = ""
    tags: list[str] = []
    path: str
    format: str = "markdown"
    output_file: str = ""
    workflow_stages: list[str] = []
    variables: list[VariableSpec] = []
    checksum: str = ""  # "sha256:<hex>"
    updated_at: str | None = None

    @field_validator("updated_at", mode="before")
    @classmethod
    def _stringify_timestamp(cls, value: Any) -> Any:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value


class AssetFilter(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str | None = None
    category: str | None = None
    tags: list[str] = []
    stage: str | None = None  # workflow stage id, e.g. "04-design"
    limit: int = Field(default=50, ge=0)
    offset: int = Field(default=0, ge=0)


class AssetPage(BaseModel):
    model_config = ConfigDict(frozen=True)

    results: list[AssetMetadata]
    total: int
    has_more: bool
    offset: int = 0
    limit: int = 0


class GetOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    include_metadata: bool = True
    verify_integrity: bool = True
    use_cache: bool = True


class AssetContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    metadata: AssetMetadata | None
    body: bytes
    cached: bool  # served without touching the network
    cache_age_seconds: int = 0
    checksum: str  # "sha256:<hex>" of body
    verified: bool = False  # body matched the manifest checksum

    @property
    def text(self) -> str:
        return self.body.decode("utf-8")


class SyncRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    force: bool = False
    shallow: bool = False
    branch: str | None = None
    timeout_seconds: float | None = None


class SyncResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["success", "partial", "error"]
    added: int = Field(default=0, ge=0)
    updated: int = Field(default=0, ge=0)
    removed: int = Field(default=0, ge=0)
    duration_seconds: float = 0.0
    cache_size_mb: float = 0.0
    last_sync: datetime | None = None
    manifest_refreshed: bool = False
    error: str | None = None


class CacheInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    cache_path: str
    total_size_bytes: int
    total_size_mb: float
    entry_count: int
    hit_ratio: float
    last_sync: datetime | None = None


class RateLimitInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    limit: int | None = None
    remaining: int | None = None
    reset: datetime | None = None


# ---------------------------------------------------------------------------
# Task manifest (manifest.yaml in a task directory)
# ---------------------------------------------------------------------------


def _rfc3339(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    text = str(value)
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValueError(f"'{text}' is not an RFC 3339 timestamp") from exc
    return text


class _Section(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TaskInfo(_Section):
    id: str = ""
    title: str = ""
    type: str = "task"
    status: str = "proposed"
    priority: str = "P2"
    size: str = ""
    points: int | None = None


class Owner(_Section):
    name: str = ""
    email: str = ""
    github: str = ""


class TeamInfo(_Section):
    name: str = ""
    stream: str = ""
    members: list[str] = []


class TaskDates(_Section):
    created: str | None = None
    started: str | None = None
    target: str | None = None
    completed: str | None = None
    last_updated: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> str | None:
        return _rfc3339(value)


class Workflow(_Section):
    current_stage: str = ""
    completed_stages: list[str] = []
    stages: list[str] = []


class SuccessCriteria(_Section):
    business: list[str] = []
    technical: list[str] = []
    ux: list[str] = []


class Dependencies(_Section):
    upstream: list[str] = []
    downstream: list[str] = []


class Risk(_Section):
    level: str = ""
    factors: list[str] = []


class TaskManifest(_Section):
    schema_version: str = "1.0"
    task: TaskInfo = TaskInfo()
    owner: Owner = Owner()
    team: TeamInfo = TeamInfo()
    dates: TaskDates = TaskDates()
    workflow: Workflow = Workflow()
    success_criteria: SuccessCriteria = SuccessCriteria()
    dependencies: Dependencies = Dependencies()
    risk: Risk = Risk()
    labels: list[str] = []
    tags: list[str] = []
    custom_fields: dict[str, Any] = {}

    @field_validator("schema_version", mode="before")
    @classmethod
    def _version_text(cls, value: Any) -> str:
        # YAML reads 1.0 as a float
        return str(value)


# ---------------------------------------------------------------------------
# External source snapshots (metadata/<source>.json)
# ---------------------------------------------------------------------------


class SnapshotTaskData(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    title: str = ""
    description: str | None = None
    type: str = ""
    status: str = ""
    priority: str | int | None = None
    assignee: str | None = None
    team: str | None = None
    labels: list[str] = []
    external_url: str = ""


class ExternalSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    external_system: str
    external_id: str
    fetched_at: datetime
    task_data: SnapshotTaskData
    raw_data: dict[str, Any] = {}


class RenderResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    asset_name: str
    output_path: str
    content: str
    bytes_written: int = 0
    previewed: bool = False
