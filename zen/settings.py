"""Settings resolution: CLI overrides > environment > .env > TOML files > defaults."""

import os
from collections.abc import Mapping
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import tomlkit
from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from zen.errors import InvalidArgument

CONFIG_PATH = Path.home() / ".zen" / "config.toml"
PROJECT_CONFIG_PATH = Path(".zen") / "config.toml"

SECTIONS = ("assets", "auth", "templates")


def _expand(value: Any) -> Any:
    if isinstance(value, (str, Path)):
        return Path(os.path.expanduser(str(value)))
    return value


class AssetsConfig(BaseModel):
    repository_url: str = "https://github.com/daddia/zen-assets.git"
    branch: str = "main"
    auth_provider: str = "github"
    cache_path: Path = Field(default=Path("~/.zen/library"), validate_default=True)
    cache_size_mb: int = Field(default=100, gt=0)
    default_ttl_seconds: int = Field(default=86400, gt=0)
    integrity_checks_enabled: bool = True
    prefetch_enabled: bool = True
    prefetch: list[str] = []  # asset names fetched by non-shallow sync
    sync_timeout_seconds: int = Field(default=30, gt=0)
    max_concurrent_ops: int = Field(default=3, gt=0)
    manifest_path: str = "manifest.yaml"
    tag_match: Literal["any", "all"] = "all"

    @field_validator("cache_path", mode="before")
    @classmethod
    def _expand_cache_path(cls, value: Any) -> Any:
        return _expand(value)


class AuthConfig(BaseModel):
    storage_type: Literal["keychain", "file", "memory"] = "keychain"
    storage_path: Path = Field(default=Path("~/.zen/auth/credentials.json"), validate_default=True)
    encryption_key: SecretStr | None = None
    token_file: Path | None = None
    validation_timeout_seconds: int = Field(default=10, gt=0)

    @field_validator("storage_path", "token_file", mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        return _expand(value)


class TemplatesConfig(BaseModel):
    cache_enabled: bool = True
    cache_ttl: int = Field(default=1800, gt=0)  # seconds
    cache_size: int = Field(default=100, gt=0)
    strict_mode: bool = False
    left_delim: str = "{{"
    right_delim: str = "}}"
    workspace_root: str = "."


class ZenSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="ZEN_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    log_level: str = "warning"
    debug: bool = False
    no_color: bool = False
    prompt_disabled: bool = False

    assets: AssetsConfig = AssetsConfig()
    auth: AuthConfig = AuthConfig()
    templates: TemplatesConfig = TemplatesConfig()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            _ShorthandEnvSource(settings_cls),
            env_settings,
            dotenv_settings,
            _TomlSource(settings_cls),
            file_secret_settings,
        )


# ---------------------------------------------------------------------------
# TOML config files
# ---------------------------------------------------------------------------


def _read_toml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open() as handle:
        return tomlkit.load(handle).unwrap()


def _merge(base: dict, override: Mapping) -> dict:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


@lru_cache(maxsize=1)
def _load_toml() -> dict:
    """Load ZEN_CONFIG if set, else ./.zen/config.toml merged over ~/.zen/config.toml."""
    explicit = os.environ.get("ZEN_CONFIG")
    if explicit:
        return _read_toml(Path(explicit).expanduser())
    return _merge(_read_toml(CONFIG_PATH), _read_toml(PROJECT_CONFIG_PATH))


class _TomlSource(PydanticBaseSettingsSource):
    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return _load_toml().get(field_name), field_name, False

    def __call__(self) -> dict[str, Any]:
        doc = _load_toml()
        return {name: doc[name] for name in self.settings_cls.model_fields if name in doc}


class _ShorthandEnvSource(PydanticBaseSettingsSource):
    """Environment variables that do not follow the ZEN_<SECTION>__<KEY> convention."""

    _ASSET_KEYS = {
        "ZEN_REPOSITORY_URL": "repository_url",
        "ZEN_AUTH_PROVIDER": "auth_provider",
        "ZEN_BRANCH": "branch",
    }

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        return None, field_name, False

    def __call__(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        assets = {key: os.environ[env] for env, key in self._ASSET_KEYS.items() if os.environ.get(env)}
        if assets:
            values["assets"] = assets
        if os.environ.get("NO_COLOR"):
            values["no_color"] = True
        if os.environ.get("ZEN_PROMPT_DISABLED") or os.environ.get("PROMPT_DISABLED"):
            values["prompt_disabled"] = True
        if os.environ.get("ZEN_DEBUG", "").lower() == "true":
            values["debug"] = True
            values["log_level"] = "debug"
        return values


def get_settings(**overrides: Any) -> ZenSettings:
    """Resolve settings from every source; keyword overrides win.

    Nested overrides use section mappings, e.g. ``get_settings(assets={"branch": "dev"})``.
    """
    try:
        return ZenSettings(**overrides)
    except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors())
        raise InvalidArgument(f"invalid configuration: {problems}") from exc


# ---------------------------------------------------------------------------
# Config file editing
# ---------------------------------------------------------------------------


def _coerce(raw: str) -> Any:
    lowered = raw.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if raw.isdigit():
        return int(raw)
    return raw


def set_config_value(key: str, raw_value: str, path: Path | None = None) -> Path:
    """Write ``section.key = value`` into the user config, preserving comments and layout."""
    target = path or CONFIG_PATH
    section, _, name = key.partition(".")
    if name:
        models = {"assets": AssetsConfig, "auth": AuthConfig, "templates": TemplatesConfig}
        if section not in models or name not in models[section].model_fields:
            raise InvalidArgument(f"unknown configuration key '{key}'")
    elif section not in ZenSettings.model_fields or section in SECTIONS:
        raise InvalidArgument(f"unknown configuration key '{key}'")

    doc = tomlkit.load(target.open()) if target.exists() else tomlkit.document()
    value = _coerce(raw_value)
    if name:
        if section not in doc:
            doc.add(section, tomlkit.table())
        doc[section][name] = value
    else:
        doc[section] = value

    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(tomlkit.dumps(doc))
    _load_toml.cache_clear()
    return target
