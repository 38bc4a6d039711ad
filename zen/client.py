"""Asset client: the one entry point commands use for the asset library."""

import threading
import time
from typing import Any

from zen.auth.manager import AuthManager
from zen.cache import BYTES_PER_MB, MANIFEST_KEY, CacheStore, asset_key, compute_checksum, normalize_checksum
from zen.errors import AuthError, ChecksumMismatch, RateLimited, SchemaError, Timeout, ZenError, with_context
from zen.fetcher import AssetFetcher
from zen.logging import get_logger
from zen.manifest import Manifest, ManifestRegistry, diff_manifests, parse_manifest
from zen.models import (
    AssetContent,
    AssetFilter,
    AssetMetadata,
    AssetPage,
    CacheInfo,
    GetOptions,
    RateLimitInfo,
    SyncRequest,
    SyncResult,
)
from zen.settings import ZenSettings

logger = get_logger("client")

# Below this many remaining requests, prefetching is skipped
PREFETCH_RATE_LIMIT_FLOOR = 10


class AssetClient:
    """Composes the manifest registry, cache store, fetcher and auth manager."""

    def __init__(
        self,
        fetcher: AssetFetcher,
        cache: CacheStore,
        registry: ManifestRegistry | None = None,
        manifest_ttl: int | None = None,
        integrity_checks: bool = True,
        prefetch_enabled: bool = True,
        prefetch: list[str] | None = None,
        sync_timeout: float = 30.0,
    ) -> None:
        self.fetcher = fetcher
        self.cache = cache
        self.registry = registry or ManifestRegistry()
        self.manifest_ttl = manifest_ttl or cache.default_ttl
        self.integrity_checks = integrity_checks
        self.prefetch_enabled = prefetch_enabled
        self.prefetch = list(prefetch or [])
        self.sync_timeout = sync_timeout
        self._load_lock = threading.Lock()
        self._manifest_checksum: str | None = None

    @classmethod
    def from_settings(cls, settings: ZenSettings, auth: AuthManager | None = None) -> "AssetClient":
        cfg = settings.assets
        fetcher = AssetFetcher(
            repository_url=cfg.repository_url,
            branch=cfg.branch,
            provider=cfg.auth_provider,
            auth=auth,
            manifest_path=cfg.manifest_path,
            timeout=cfg.sync_timeout_seconds,
            max_concurrent=cfg.max_concurrent_ops,
        )
        cache = CacheStore(
            root=cfg.cache_path,
            max_size_bytes=cfg.cache_size_mb * BYTES_PER_MB,
            default_ttl=cfg.default_ttl_seconds,
            integrity_checks=cfg.integrity_checks_enabled,
        )
        return cls(
            fetcher,
            cache,
            registry=ManifestRegistry(tag_match=cfg.tag_match),
            integrity_checks=cfg.integrity_checks_enabled,
            prefetch_enabled=cfg.prefetch_enabled,
            prefetch=cfg.prefetch,
            sync_timeout=cfg.sync_timeout_seconds,
        )

    def close(self) -> None:
        self.fetcher.close()
        self.cache.close()

    def __enter__(self) -> "AssetClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    @property
    def rate_limit(self) -> RateLimitInfo:
        return self.fetcher.rate_limit

    # -----------------------------------------------------------------------
    # Manifest
    # -----------------------------------------------------------------------

    def _install(self, body: bytes, checksum: str) -> tuple[Manifest, Manifest | None]:
        """Parse and swap in a manifest body. Caller holds ``_load_lock``."""
        try:
            manifest = parse_manifest(body)
        except SchemaError:
            self.cache.delete(MANIFEST_KEY)
            raise
        previous = self.registry.replace(manifest)
        self._manifest_checksum = checksum
        return manifest, previous

    def _fetch_manifest(self, force: bool, deadline: float | None = None) -> tuple[bytes, str]:
        fetch = lambda: self.fetcher.fetch_manifest(deadline=deadline)  # noqa: E731
        try:
            outcome = self.cache.get_or_fetch(MANIFEST_KEY, fetch, ttl=self.manifest_ttl, use_cache=not force)
        except ChecksumMismatch:
            # Corrupt cached copy was dropped; go to the network
            outcome = self.cache.get_or_fetch(MANIFEST_KEY, fetch, ttl=self.manifest_ttl, use_cache=False)
        return outcome.body, outcome.checksum

    def ensure_manifest(self) -> Manifest:
        """The loaded manifest, refreshed from cache or network when the cached copy is stale."""
        manifest = self.registry.manifest
        if manifest is not None and self.cache.is_fresh(MANIFEST_KEY):
            return manifest
        with self._load_lock:
            manifest = self.registry.manifest
            if manifest is not None and self.cache.is_fresh(MANIFEST_KEY):
                return manifest
            body, checksum = self._fetch_manifest(force=False)
            if manifest is not None and checksum == self._manifest_checksum:
                return manifest
            return self._install(body, checksum)[0]

    # -----------------------------------------------------------------------
    # Operations
    # -----------------------------------------------------------------------

    def list_assets(self, flt: AssetFilter | None = None) -> AssetPage:
        try:
            self.ensure_manifest()
            return self.registry.list_assets(flt)
        except ZenError as exc:
            raise with_context(exc, "list assets") from None

    def lookup(self, name: str) -> AssetMetadata:
        try:
            self.ensure_manifest()
            return self.registry.resolve(name)
        except ZenError as exc:
            raise with_context(exc, "lookup", name) from None

    def commands(self) -> list[str]:
        self.ensure_manifest()
        return self.registry.commands()

    def get(self, name: str, options: GetOptions | None = None) -> AssetContent:
        """Fetch an asset body by name or command, from cache when fresh."""
        options = options or GetOptions()
        metadata = self.lookup(name)
        key = asset_key(metadata.name)
        declared = normalize_checksum(metadata.checksum) if metadata.checksum else None
        verify = options.verify_integrity and self.integrity_checks

        # A cached body recorded against an older manifest checksum is outdated, not corrupt
        existing = self.cache.peek(key)
        if existing is not None and declared and existing.checksum != declared:
            logger.debug("cached %s predates the current manifest, refetching", key)
            self.cache.delete(key)

        try:
            outcome = self.cache.get_or_fetch(
                key,
                lambda: self.fetcher.fetch_asset(metadata.path),
                checksum=declared,
                use_cache=options.use_cache,
                verify=verify,
            )
        except ZenError as exc:
            raise with_context(exc, "get", key) from None

        actual = compute_checksum(outcome.body)
        if declared and actual != declared:
            if verify:
                self.cache.delete(key)
                raise ChecksumMismatch(
                    f"get {key}: content does not match the manifest checksum", expected=declared, actual=actual
                )
            logger.warning("%s does not match its manifest checksum; integrity checks are disabled", key)

        return AssetContent(
            metadata=metadata if options.include_metadata else None,
            body=outcome.body,
            cached=outcome.cached,
            cache_age_seconds=int(outcome.age_seconds),
            checksum=actual,
            verified=bool(declared) and actual == declared,
        )

    def sync(self, request: SyncRequest | None = None) -> SyncResult:
        """Refresh the manifest (always when forced, else only when stale) and report what changed."""
        request = request or SyncRequest()
        started = time.monotonic()
        deadline = started + (request.timeout_seconds or self.sync_timeout)

        force = request.force
        if request.branch and request.branch != self.fetcher.branch:
            logger.info("switching asset branch %s -> %s", self.fetcher.branch, request.branch)
            self.fetcher.branch = request.branch
            force = True

        added = updated = removed = 0
        refreshed = False
        try:
            with self._load_lock:
                if force or not self.cache.is_fresh(MANIFEST_KEY):
                    previous = self._previous_manifest()
                    body, checksum = self._fetch_manifest(force=True, deadline=deadline)
                    manifest, _ = self._install(body, checksum)
                    added, updated, removed = diff_manifests(previous, manifest)
                    self._invalidate_changed(previous, manifest)
                    refreshed = True
        except (AuthError, RateLimited, Timeout):
            raise
        except ZenError as exc:
            logger.error("sync failed: %s", exc.message)
            return SyncResult(
                status="error",
                duration_seconds=max(time.monotonic() - started, 1e-6),
                cache_size_mb=self.cache.total_size() / BYTES_PER_MB,
                error=exc.message,
            )

        failures = [] if request.shallow else self._prefetch(deadline)
        last_sync = self.cache.mark_synced()
        result = SyncResult(
            status="partial" if failures else "success",
            added=added,
            updated=updated,
            removed=removed,
            duration_seconds=max(time.monotonic() - started, 1e-6),
            cache_size_mb=self.cache.total_size() / BYTES_PER_MB,
            last_sync=last_sync,
            manifest_refreshed=refreshed,
            error="; ".join(failures) if failures else None,
        )
        logger.info(
            "sync %s: +%d ~%d -%d in %.2fs", result.status, added, updated, removed, result.duration_seconds
        )
        return result

    def _previous_manifest(self) -> Manifest | None:
        """The manifest to diff against: in memory, else the (possibly stale) cached copy."""
        if self.registry.manifest is not None:
            return self.registry.manifest
        body = self.cache.read_stale(MANIFEST_KEY)
        if body is None:
            return None
        try:
            return parse_manifest(body)
        except SchemaError:
            return None

    def _invalidate_changed(self, previous: Manifest | None, current: Manifest) -> None:
        if previous is None:
            return
        for asset in previous.assets:
            now = current.get(asset.name)
            if now is None or now.checksum != asset.checksum or now.path != asset.path:
                self.cache.delete(asset_key(asset.name))

    def _prefetch(self, deadline: float) -> list[str]:
        if not self.prefetch_enabled or not self.prefetch:
            return []
        remaining = self.rate_limit.remaining
        if remaining is not None and remaining < PREFETCH_RATE_LIMIT_FLOOR:
            logger.warning("skipping prefetch: only %d API requests remaining", remaining)
            return []

        failures: list[str] = []
        for name in self.prefetch:
            if time.monotonic() >= deadline:
                failures.append(f"{name}: sync deadline exceeded")
                continue
            try:
                self.get(name)
            except ZenError as exc:
                logger.warning("prefetch of %s failed: %s", name, exc.message)
                failures.append(f"{name}: {exc.message}")
        return failures

    def get_cache_info(self) -> CacheInfo:
        return CacheInfo(**self.cache.info())

    def clear_cache(self) -> int:
        removed = self.cache.clear()
        self._manifest_checksum = None
        return removed
