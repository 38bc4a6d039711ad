"""Asset manifest parsing and the in-memory catalogue built from it."""

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

import yaml
from pydantic import ValidationError

from zen.errors import NotFound, SchemaError
from zen.logging import get_logger
from zen.models import AssetFilter, AssetMetadata, AssetPage

logger = get_logger("manifest")

TOP_LEVEL_KEYS = ("schema_version", "version", "generated", "assets")
_CHECKSUM = re.compile(r"^(sha256:)?[0-9a-fA-F]{64}$")

TagMatch = Literal["any", "all"]


@dataclass(frozen=True)
class Manifest:
    schema_version: str
    version: str = ""
    generated: str = ""
    assets: tuple[AssetMetadata, ...] = ()
    _by_name: dict[str, AssetMetadata] = field(default_factory=dict, repr=False, compare=False)
    _by_command: dict[str, AssetMetadata] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def build(
        cls, schema_version: str, assets: Iterable[AssetMetadata], version: str = "", generated: str = ""
    ) -> "Manifest":
        ordered = tuple(sorted(assets, key=lambda a: a.name))
        by_name = {a.name: a for a in ordered}
        by_command = {a.command: a for a in ordered if a.command}
        return cls(schema_version, version, generated, ordered, by_name, by_command)

    @property
    def names(self) -> frozenset[str]:
        return frozenset(self._by_name)

    def get(self, name: str) -> AssetMetadata | None:
        return self._by_name.get(name)

    def by_command(self, command: str) -> AssetMetadata | None:
        return self._by_command.get(command)

    @property
    def commands(self) -> list[str]:
        return sorted(self._by_command)


def _text(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


def parse_manifest(raw: bytes | str) -> Manifest:
    """Parse a YAML manifest. Unknown top-level keys and malformed entries raise ``SchemaError``."""
    try:
        doc = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise SchemaError("manifest is not valid YAML", details=str(exc)) from exc

    if not isinstance(doc, dict):
        raise SchemaError("manifest must be a YAML mapping")
    unknown = sorted(set(doc) - set(TOP_LEVEL_KEYS))
    if unknown:
        raise SchemaError(f"unknown top-level manifest key(s): {', '.join(map(str, unknown))}")
    if doc.get("schema_version") in (None, ""):
        raise SchemaError("manifest is missing schema_version")

    raw_assets = doc.get("assets")
    if raw_assets is None:
        raw_assets = []
    if not isinstance(raw_assets, list):
        raise SchemaError("manifest 'assets' must be a list")

    assets: list[AssetMetadata] = []
    seen: set[str] = set()
    for position, entry in enumerate(raw_assets):
        if not isinstance(entry, dict):
            raise SchemaError(f"manifest entry {position} is not a mapping")
        try:
            asset = AssetMetadata.model_validate(entry)
        except ValidationError as exc:
            problems = "; ".join(f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors())
            raise SchemaError(f"manifest entry {position} is invalid: {problems}") from exc
        if asset.name in seen:
            raise SchemaError(f"duplicate asset name '{asset.name}' in manifest")
        if asset.checksum and not _CHECKSUM.match(asset.checksum):
            raise SchemaError(f"asset '{asset.name}' has a malformed checksum")
        seen.add(asset.name)
        assets.append(asset)

    return Manifest.build(
        schema_version=_text(doc["schema_version"]),
        assets=assets,
        version=_text(doc.get("version")),
        generated=_text(doc.get("generated")),
    )


def dump_manifest(manifest: Manifest) -> str:
    """Serialise back to YAML; entries keep name order and every declared field."""
    doc: dict[str, Any] = {"schema_version": manifest.schema_version}
    if manifest.version:
        doc["version"] = manifest.version
    if manifest.generated:
        doc["generated"] = manifest.generated
    doc["assets"] = [asset.model_dump(mode="json", exclude_none=True) for asset in manifest.assets]
    return yaml.safe_dump(doc, sort_keys=False, allow_unicode=True)


def diff_manifests(previous: Manifest | None, current: Manifest) -> tuple[int, int, int]:
    """Return (added, updated, removed). An asset is updated when its checksum or updated_at changed."""
    if previous is None:
        return len(current.assets), 0, 0
    old, new = previous.names, current.names
    updated = 0
    for name in old & new:
        before, after = previous.get(name), current.get(name)
        assert before is not None and after is not None
        if before.checksum != after.checksum or before.updated_at != after.updated_at:
            updated += 1
    return len(new - old), updated, len(old - new)


class ManifestRegistry:
    """Catalogue of asset metadata, replaced wholesale on each load.

    Readers take the current ``Manifest`` reference once per call, so a
    concurrent ``load`` never exposes a half-built catalogue.
    """

    def __init__(self, tag_match: TagMatch = "all") -> None:
        if tag_match not in ("any", "all"):
            raise ValueError(f"tag_match must be 'any' or 'all', not {tag_match!r}")
        self.tag_match = tag_match
        self._manifest: Manifest | None = None

    @property
    def manifest(self) -> Manifest | None:
        return self._manifest

    @property
    def is_loaded(self) -> bool:
        return self._manifest is not None

    def load(self, raw: bytes | str) -> Manifest:
        manifest = parse_manifest(raw)
        self.replace(manifest)
        return manifest

    def replace(self, manifest: Manifest) -> Manifest | None:
        """Swap in ``manifest``; returns the previous one."""
        previous, self._manifest = self._manifest, manifest
        logger.info("manifest %s loaded with %d assets", manifest.version or "(unversioned)", len(manifest.assets))
        return previous

    def _current(self) -> Manifest:
        manifest = self._manifest
        if manifest is None:
            raise NotFound("asset manifest has not been loaded")
        return manifest

    def lookup(self, name: str) -> AssetMetadata:
        asset = self._current().get(name)
        if asset is None:
            raise NotFound(f"asset '{name}' not found")
        return asset

    def lookup_command(self, command: str) -> AssetMetadata:
        asset = self._current().by_command(command)
        if asset is None:
            raise NotFound(f"no asset provides command '{command}'")
        return asset

    def resolve(self, name_or_command: str) -> AssetMetadata:
        manifest = self._current()
        asset = manifest.get(name_or_command) or manifest.by_command(name_or_command)
        if asset is None:
            raise NotFound(f"asset '{name_or_command}' not found")
        return asset

    def commands(self) -> list[str]:
        return self._current().commands

    def _matches(self, asset: AssetMetadata, flt: AssetFilter) -> bool:
        if flt.type and asset.type != flt.type:
            return False
        if flt.category and asset.category != flt.category:
            return False
        if flt.stage and flt.stage not in asset.workflow_stages:
            return False
        if flt.tags:
            have = {t.lower() for t in asset.tags}
            want = [t.lower() for t in flt.tags]
            check = all if self.tag_match == "all" else any
            if not check(t in have for t in want):
                return False
        return True

    def list_assets(self, flt: AssetFilter | None = None) -> AssetPage:
        """Filtered assets in name order. ``limit=0`` returns everything from ``offset``."""
        flt = flt or AssetFilter()
        manifest = self._current()
        matches = [asset for asset in manifest.assets if self._matches(asset, flt)]
        total = len(matches)
        end = total if flt.limit == 0 else flt.offset + flt.limit
        results = matches[flt.offset : end]
        return AssetPage(
            results=results,
            total=total,
            has_more=flt.offset + len(results) < total,
            offset=flt.offset,
            limit=flt.limit,
        )
