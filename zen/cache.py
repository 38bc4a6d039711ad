"""
On-disk asset cache
===================

Content-addressed store for manifest and asset bodies with:

- per-entry TTL (fresh iff ``now - stored_at < ttl``)
- a total size cap enforced by LRU eviction on ``put``
- sha256 integrity verification on read
- single-flight ``get_or_fetch`` so one cache miss triggers at most one fetch

Layout under the cache root::

    index.json          key -> entry metadata, stats, last sync
    <sha256(key)>.body  entry bytes
    <sha256(key)>.meta  entry metadata, used to rebuild a corrupt index

Hit and miss bookkeeping is held in memory and written with the next index
change, or by ``flush``/``close``.
"""

import contextlib
import hashlib
import json
import os
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from zen.errors import ChecksumMismatch, EntryTooLarge, InvalidArgument, StorageUnavailable, Timeout
from zen.fs import atomic_write, ensure_dir, stage_write
from zen.logging import get_logger

logger = get_logger("cache")

INDEX_FILE = "index.json"
INDEX_VERSION = 1
MANIFEST_KEY = "manifest"
BYTES_PER_MB = 1024 * 1024


def asset_key(name: str) -> str:
    return f"asset:{name}"


def compute_checksum(body: bytes) -> str:
    return f"sha256:{hashlib.sha256(body).hexdigest()}"


def normalize_checksum(checksum: str) -> str:
    """Return ``sha256:<lower hex>``; a bare hex digest is taken to be sha256."""
    checksum = checksum.strip()
    algorithm, sep, digest = checksum.partition(":")
    if not sep:
        algorithm, digest = "sha256", checksum
    if algorithm.lower() != "sha256":
        raise InvalidArgument(f"unsupported checksum algorithm '{algorithm}'")
    return f"sha256:{digest.lower()}"


def _file_stem(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


def _discard_staged(staged: list[tuple[Path, Path]]) -> None:
    for temp_path, _ in staged:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)


@dataclass
class CacheEntry:
    """Index record for one cached body."""

    key: str
    file: str
    size: int
    stored_at: float
    ttl: int
    checksum: str
    accessed_at: float

    def is_fresh(self, now: float) -> bool:
        return now - self.stored_at < self.ttl

    @classmethod
    def from_dict(cls, data: dict) -> "CacheEntry":
        return cls(
            key=str(data["key"]),
            file=str(data["file"]),
            size=int(data["size"]),
            stored_at=float(data["stored_at"]),
            ttl=int(data["ttl"]),
            checksum=str(data["checksum"]),
            accessed_at=float(data.get("accessed_at", data["stored_at"])),
        )


@dataclass(frozen=True)
class CacheHit:
    key: str
    body: bytes
    age_seconds: float
    checksum: str
    verified: bool  # body digest was recomputed and matched


@dataclass(frozen=True)
class FetchOutcome:
    body: bytes
    cached: bool  # served from disk without calling the fetch function
    age_seconds: float
    checksum: str


class _Flight:
    """Rendezvous for one in-flight fetch: the leader fills it, followers wait on it."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.outcome: FetchOutcome | None = None
        self.error: BaseException | None = None


class CacheStore:
    """Thread-safe, size-bounded, TTL-governed cache of bytes keyed by string."""

    def __init__(
        self,
        root: Path,
        max_size_bytes: int,
        default_ttl: int,
        integrity_checks: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_size_bytes <= 0:
            raise InvalidArgument("cache size must be positive")
        if default_ttl <= 0:
            raise InvalidArgument("default TTL must be positive")
        self.root = Path(root).expanduser()
        self.max_size_bytes = max_size_bytes
        self.default_ttl = default_ttl
        self.integrity_checks = integrity_checks
        self._clock = clock

        self._lock = threading.RLock()
        self._entries: dict[str, CacheEntry] = {}
        self._hits = 0
        self._misses = 0
        self._last_sync: str | None = None
        self._dirty = False  # hit/miss bookkeeping not yet written to the index

        self._flight_lock = threading.Lock()
        self._flights: dict[str, _Flight] = {}

        try:
            ensure_dir(self.root, mode=0o755)
        except OSError as exc:
            raise StorageUnavailable(f"cannot create cache directory {self.root}", details=str(exc)) from exc
        self._load()

    # -----------------------------------------------------------------------
    # Index persistence
    # -----------------------------------------------------------------------

    @property
    def index_path(self) -> Path:
        return self.root / INDEX_FILE

    def _body_path(self, entry: CacheEntry) -> Path:
        return self.root / entry.file

    def _meta_path(self, entry: CacheEntry) -> Path:
        return self.root / f"{Path(entry.file).stem}.meta"

    def _load(self) -> None:
        """Read the index, rebuild it from .meta files if corrupt, and drop orphans."""
        entries: dict[str, CacheEntry] | None = None
        if self.index_path.exists():
            try:
                data = json.loads(self.index_path.read_text())
                entries = {key: CacheEntry.from_dict(raw) for key, raw in data.get("entries", {}).items()}
                stats = data.get("stats", {})
                self._hits = int(stats.get("hits", 0))
                self._misses = int(stats.get("misses", 0))
                self._last_sync = data.get("last_sync")
            except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
                logger.warning("cache index %s is corrupt (%s), rebuilding from entry files", self.index_path, exc)
                entries = self._rebuild_from_meta()
        else:
            entries = self._rebuild_from_meta()

        # Entries whose body vanished are dropped
        for key, entry in list(entries.items()):
            if not self._body_path(entry).exists():
                logger.debug("cache entry %s has no body file, dropping", key)
                del entries[key]
        self._entries = entries

        # Orphans: body/meta files no entry references, and stale temp files
        referenced = {entry.file for entry in entries.values()}
        referenced |= {self._meta_path(entry).name for entry in entries.values()}
        for path in self.root.iterdir():
            if path.name == INDEX_FILE or path.is_dir():
                continue
            if path.name not in referenced:
                logger.debug("removing orphaned cache file %s", path.name)
                with contextlib.suppress(OSError):
                    path.unlink()

        self._enforce_cap_after_load()
        self._save()

    def _rebuild_from_meta(self) -> dict[str, CacheEntry]:
        entries: dict[str, CacheEntry] = {}
        for meta in self.root.glob("*.meta"):
            try:
                entry = CacheEntry.from_dict(json.loads(meta.read_text()))
            except (OSError, ValueError, KeyError, TypeError):
                continue
            if entry.file == f"{_file_stem(entry.key)}.body":
                entries[entry.key] = entry
        return entries

    def _enforce_cap_after_load(self) -> None:
        # A smaller cap in config than on disk: trim LRU until it fits
        victims = self._select_victims(self.max_size_bytes, exclude=None)
        for entry in victims:
            del self._entries[entry.key]
            self._unlink(entry)

    def _save(self) -> None:
        """Atomically rewrite the index. Caller holds ``_lock`` (or is the constructor)."""
        data = {
            "version": INDEX_VERSION,
            "entries": {key: asdict(entry) for key, entry in sorted(self._entries.items())},
            "stats": {"hits": self._hits, "misses": self._misses},
            "last_sync": self._last_sync,
        }
        try:
            atomic_write(self.index_path, json.dumps(data, indent=2))
        except OSError as exc:
            raise StorageUnavailable(f"cannot write cache index {self.index_path}", details=str(exc)) from exc
        self._dirty = False

    def _unlink(self, entry: CacheEntry) -> None:
        for path in (self._body_path(entry), self._meta_path(entry)):
            with contextlib.suppress(FileNotFoundError):
                path.unlink()

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def peek(self, key: str) -> CacheEntry | None:
        """Index metadata for ``key`` without reading the body or touching stats."""
        with self._lock:
            entry = self._entries.get(key)
            return replace(entry) if entry else None

    def is_fresh(self, key: str) -> bool:
        entry = self.peek(key)
        return entry is not None and entry.is_fresh(self._clock())

    def read_stale(self, key: str) -> bytes | None:
        """Body for ``key`` regardless of age. No stats, no verification."""
        entry = self.peek(key)
        if entry is None:
            return None
        try:
            return self._body_path(entry).read_bytes()
        except OSError:
            return None

    def _record_miss(self) -> None:
        with self._lock:
            self._misses += 1
            self._dirty = True

    def _discard(self, key: str, entry: CacheEntry) -> bool:
        """Remove ``entry`` if it is still the indexed one for ``key``.

        Returns False when a concurrent ``put`` already replaced it; the new
        body shares the file name, so it must not be unlinked.
        """
        with self._lock:
            if self._entries.get(key) is not entry:
                return False
            del self._entries[key]
            self._unlink(entry)
            self._save()
            return True

    def get(self, key: str, verify: bool | None = None) -> CacheHit | None:
        """Return the fresh entry for ``key`` or ``None`` on a miss.

        With integrity checks on, a body whose digest differs from the recorded
        checksum is deleted and ``ChecksumMismatch`` is raised.
        """
        verify = self.integrity_checks if verify is None else verify
        while True:
            now = self._clock()
            with self._lock:
                entry = self._entries.get(key)
            if entry is None:
                self._record_miss()
                return None
            if not entry.is_fresh(now):
                if not self._discard(key, entry):
                    continue
                logger.debug("cache entry %s expired", key)
                self._record_miss()
                return None

            try:
                body = self._body_path(entry).read_bytes()
            except OSError:
                if not self._discard(key, entry):
                    continue
                logger.warning("cache body for %s is unreadable, dropping entry", key)
                self._record_miss()
                return None

            if verify:
                actual = compute_checksum(body)
                if actual != entry.checksum:
                    if not self._discard(key, entry):
                        continue
                    logger.warning("integrity check failed for %s, removing entry", key)
                    self._record_miss()
                    raise ChecksumMismatch(
                        f"cached '{key}' does not match its recorded checksum", expected=entry.checksum, actual=actual
                    )

            with self._lock:
                if self._entries.get(key) is not entry:
                    continue
                entry.accessed_at = max(entry.accessed_at, now)
                self._hits += 1
                self._dirty = True
            logger.debug("cache hit %s", key)
            return CacheHit(
                key=key, body=body, age_seconds=max(0.0, now - entry.stored_at), checksum=entry.checksum, verified=verify
            )

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def _select_victims(self, budget: int, exclude: str | None, incoming: int = 0) -> list[CacheEntry]:
        """LRU by access time, ties broken by oldest stored_at, until ``incoming`` fits in ``budget``."""
        total = sum(e.size for k, e in self._entries.items() if k != exclude) + incoming
        if total <= budget:
            return []
        victims = []
        candidates = sorted(
            (e for k, e in self._entries.items() if k != exclude), key=lambda e: (e.accessed_at, e.stored_at)
        )
        for entry in candidates:
            if total <= budget:
                break
            victims.append(entry)
            total -= entry.size
        return victims

    def put(self, key: str, body: bytes, ttl: int | None = None, checksum: str | None = None) -> CacheEntry:
        """Persist ``body`` under ``key``.

        ``checksum`` records an externally declared digest instead of the
        computed one; a later verified read then rejects a body that does not
        match it.
        """
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise InvalidArgument("TTL must be a positive number of seconds")
        size = len(body)
        if size > self.max_size_bytes:
            raise EntryTooLarge(f"'{key}' is {size} bytes, larger than the {self.max_size_bytes} byte cache")

        now = self._clock()
        stem = _file_stem(key)
        entry = CacheEntry(
            key=key,
            file=f"{stem}.body",
            size=size,
            stored_at=now,
            ttl=ttl,
            checksum=normalize_checksum(checksum) if checksum else compute_checksum(body),
            accessed_at=now,
        )

        staged: list[tuple[Path, Path]] = []
        try:
            for final_path, payload in (
                (self._body_path(entry), body),
                (self._meta_path(entry), json.dumps(asdict(entry))),
            ):
                staged.append((stage_write(final_path, payload), final_path))
        except OSError as exc:
            _discard_staged(staged)
            raise StorageUnavailable(f"cannot write cache entry '{key}'", details=str(exc)) from exc

        # Only the renames run under the index lock
        with self._lock:
            try:
                for temp_path, final_path in staged:
                    os.replace(temp_path, final_path)
            except OSError as exc:
                _discard_staged(staged)
                raise StorageUnavailable(f"cannot write cache entry '{key}'", details=str(exc)) from exc

            victims = self._select_victims(self.max_size_bytes, exclude=key, incoming=size)
            for victim in victims:
                del self._entries[victim.key]
                logger.debug("evicted %s (%d bytes)", victim.key, victim.size)
                self._unlink(victim)
            self._entries[key] = entry
            self._save()
        return replace(entry)

    def delete(self, key: str) -> None:
        with self._lock:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._unlink(entry)
                self._save()

    def clear(self) -> int:
        """Remove every entry; returns how many were removed."""
        with self._lock:
            removed = list(self._entries.values())
            self._entries.clear()
            for entry in removed:
                self._unlink(entry)
            self._hits = 0
            self._misses = 0
            self._save()
        logger.info("cleared %d cache entries", len(removed))
        return len(removed)

    def mark_synced(self, when: datetime | None = None) -> datetime:
        when = when or datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        with self._lock:
            self._last_sync = when.isoformat()
            self._save()
        return when

    def flush(self) -> None:
        """Write pending hit/miss and access-time updates to the index."""
        with self._lock:
            if self._dirty:
                self._save()

    def close(self) -> None:
        self.flush()

    def info(self) -> dict:
        with self._lock:
            total = sum(e.size for e in self._entries.values())
            lookups = self._hits + self._misses
            return {
                "cache_path": str(self.root),
                "total_size_bytes": total,
                "total_size_mb": total / BYTES_PER_MB,
                "entry_count": len(self._entries),
                "hit_ratio": self._hits / lookups if lookups else 0.0,
                "last_sync": datetime.fromisoformat(self._last_sync) if self._last_sync else None,
            }

    def total_size(self) -> int:
        with self._lock:
            return sum(e.size for e in self._entries.values())

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    # -----------------------------------------------------------------------
    # Single-flight
    # -----------------------------------------------------------------------

    def get_or_fetch(
        self,
        key: str,
        fetch: Callable[[], bytes],
        ttl: int | None = None,
        checksum: str | None = None,
        use_cache: bool = True,
        verify: bool | None = None,
        timeout: float | None = None,
    ) -> FetchOutcome:
        """Return the fresh entry for ``key``, or fetch and store it exactly once.

        Concurrent callers for the same key share one call to ``fetch``: the
        first becomes the leader, the rest wait for its outcome. A failure
        (including cancellation) is re-raised in every waiter and is not cached.
        """
        if use_cache:
            hit = self.get(key, verify=verify)
            if hit is not None:
                return FetchOutcome(body=hit.body, cached=True, age_seconds=hit.age_seconds, checksum=hit.checksum)

        with self._flight_lock:
            flight = self._flights.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._flights[key] = flight
        assert flight is not None

        if not leader:
            logger.debug("waiting on in-flight fetch for %s", key)
            if not flight.done.wait(timeout):
                raise Timeout(f"timed out waiting for in-flight fetch of '{key}'")
            if flight.error is not None:
                raise flight.error
            assert flight.outcome is not None
            return flight.outcome

        try:
            # Another leader may have stored the entry between our miss and registration
            hit = self.get(key, verify=verify) if use_cache else None
            if hit is not None:
                flight.outcome = FetchOutcome(body=hit.body, cached=True, age_seconds=hit.age_seconds, checksum=hit.checksum)
            else:
                body = fetch()
                entry = self.put(key, body, ttl=ttl, checksum=checksum)
                flight.outcome = FetchOutcome(body=body, cached=False, age_seconds=0.0, checksum=entry.checksum)
            return flight.outcome
        except BaseException as exc:
            flight.error = exc
            raise
        finally:
            with self._flight_lock:
                self._flights.pop(key, None)
            flight.done.set()

