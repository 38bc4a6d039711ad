"""
Template compilation and rendering on top of jinja2.

Strict mode refuses to render when a referenced name has no value;
lenient mode renders missing names as the empty string. Compiled
bindings are kept in a small thread-safe LRU cache with a TTL.
"""

import hashlib
import re
import threading
import time
import traceback
from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from jinja2 import ChainableUndefined, Environment, StrictUndefined, Template, TemplateSyntaxError, UndefinedError, meta
from jinja2 import TemplateError as JinjaTemplateError

from zen.errors import CompileError, NotFound, RenderError, VariableMissing
from zen.logging import get_logger
from zen.models import AssetMetadata
from zen.settings import TemplatesConfig
from zen.templates.functions import GLOBAL_ONLY, TemplateFunctions
from zen.templates.validator import VariableProblem, apply_defaults, validate

if TYPE_CHECKING:
    from zen.client import AssetClient

logger = get_logger("templates")

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")
_TEMPLATE_FRAME = "<template>"


@dataclass(frozen=True)
class TemplateBinding:
    """A compiled template plus what is known about it."""

    name: str
    template: Template = field(repr=False)
    variables: frozenset[str]
    delimiters: tuple[str, str]
    metadata: AssetMetadata | None = None
    checksum: str = ""


@dataclass
class _CachedBinding:
    binding: TemplateBinding
    created_at: float
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at


class CompiledTemplateCache:
    """Thread-safe LRU cache of compiled bindings with an optional TTL."""

    def __init__(self, maxsize: int = 100, ttl_seconds: float | None = None, clock: Callable[[], float] = time.monotonic):
        self._entries: OrderedDict[str, _CachedBinding] = OrderedDict()
        self._lock = threading.RLock()
        self._maxsize = maxsize
        self._ttl = ttl_seconds
        self._clock = clock
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> TemplateBinding | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                return None
            self._entries.move_to_end(key)
            self._hits += 1
            return entry.binding

    def set(self, key: str, binding: TemplateBinding) -> None:
        with self._lock:
            now = self._clock()
            expires_at = now + self._ttl if self._ttl is not None else None
            self._entries[key] = _CachedBinding(binding, created_at=now, expires_at=expires_at)
            self._entries.move_to_end(key)
            while len(self._entries) > self._maxsize:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("evicted compiled template %s", evicted)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def stats(self) -> dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._entries),
                "maxsize": self._maxsize,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": self._hits / total if total else 0.0,
            }


def _template_line(exc: BaseException) -> int | None:
    """Line number of the innermost template frame in ``exc``'s traceback."""
    lineno = getattr(exc, "lineno", None)
    if lineno:
        return lineno
    frames = [frame for frame in traceback.extract_tb(exc.__traceback__) if frame.filename == _TEMPLATE_FRAME]
    return frames[-1].lineno if frames else None


class TemplateEngine:
    """Compiles asset bodies and renders them over a variable map."""

    def __init__(
        self,
        client: "AssetClient | None" = None,
        config: TemplatesConfig | None = None,
        functions: TemplateFunctions | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or TemplatesConfig()
        self._client = client
        self._functions = functions or TemplateFunctions(workspace_root=self.config.workspace_root)
        self._library = self._functions.as_dict()

        self._env = Environment(
            undefined=StrictUndefined if self.config.strict_mode else ChainableUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            variable_start_string=self.config.left_delim,
            variable_end_string=self.config.right_delim,
        )
        self._env.globals.update(self._library)
        self._env.filters.update({name: fn for name, fn in self._library.items() if name not in GLOBAL_ONLY})

        self._cache: CompiledTemplateCache | None = None
        if self.config.cache_enabled:
            self._cache = CompiledTemplateCache(
                maxsize=self.config.cache_size, ttl_seconds=self.config.cache_ttl, clock=clock
            )

    @property
    def strict(self) -> bool:
        return self.config.strict_mode

    @property
    def delimiters(self) -> tuple[str, str]:
        return self.config.left_delim, self.config.right_delim

    # -----------------------------------------------------------------------
    # Compilation
    # -----------------------------------------------------------------------

    def _compile(self, name: str, body: str, metadata: AssetMetadata | None) -> TemplateBinding:
        try:
            tree = self._env.parse(body, name=name)
            template = self._env.from_string(tree)
        except TemplateSyntaxError as exc:
            raise CompileError(f"{name}: {exc.message}", line=exc.lineno) from exc

        referenced = meta.find_undeclared_variables(tree) - set(self._env.globals)
        binding = TemplateBinding(
            name=name,
            template=template,
            variables=frozenset(referenced),
            delimiters=self.delimiters,
            metadata=metadata,
            checksum=hashlib.sha256(body.encode("utf-8")).hexdigest(),
        )
        logger.debug("compiled %s referencing %d variable(s)", name, len(referenced))
        return binding

    def _cached(self, key: str, build: Callable[[], TemplateBinding]) -> TemplateBinding:
        if self._cache is None:
            return build()
        binding = self._cache.get(key)
        if binding is None:
            binding = build()
            self._cache.set(key, binding)
        return binding

    def compile_string(self, name: str, body: str, metadata: AssetMetadata | None = None) -> TemplateBinding:
        """Compile raw template content that is already in hand."""
        key = f"{name}:{hashlib.sha256(body.encode('utf-8')).hexdigest()}"
        return self._cached(key, lambda: self._compile(name, body, metadata))

    def load_template(self, name: str) -> TemplateBinding:
        """Fetch the named asset through the asset client and compile it."""
        if self._client is None:
            raise NotFound(f"cannot load template '{name}': no asset client configured")
        client = self._client

        def build() -> TemplateBinding:
            content = client.get(name)
            try:
                body = content.text
            except UnicodeDecodeError as exc:
                raise CompileError(f"{name}: template body is not valid UTF-8") from exc
            return self._compile(content.metadata.name if content.metadata else name, body, content.metadata)

        return self._cached(f"asset:{name}", build)

    # -----------------------------------------------------------------------
    # Rendering
    # -----------------------------------------------------------------------

    def render_template(self, binding: TemplateBinding, variables: Mapping[str, Any]) -> str:
        if self.strict:
            missing = sorted(binding.variables - set(variables))
            if missing:
                raise VariableMissing(missing)

        try:
            return binding.template.render(dict(variables))
        except UndefinedError as exc:
            match = _UNDEFINED_NAME.search(str(exc))
            if match:
                raise VariableMissing([match.group(1)], line=_template_line(exc)) from exc
            raise RenderError(f"{binding.name}: {exc}", line=_template_line(exc)) from exc
        except JinjaTemplateError as exc:
            raise RenderError(f"{binding.name}: {exc}", line=_template_line(exc)) from exc
        except (TypeError, ValueError, KeyError, AttributeError, ArithmeticError) as exc:
            raise RenderError(f"{binding.name}: {exc}", line=_template_line(exc)) from exc

    def validate_variables(self, binding: TemplateBinding, variables: Mapping[str, Any]) -> list[VariableProblem]:
        """Problems with ``variables`` against the asset's declared schema; empty means valid."""
        if binding.metadata is None or not binding.metadata.variables:
            return []
        return validate(variables, binding.metadata.variables)

    def apply_defaults(self, binding: TemplateBinding, variables: Mapping[str, Any]) -> dict[str, Any]:
        if binding.metadata is None:
            return dict(variables)
        return apply_defaults(variables, binding.metadata.variables)

    def get_functions(self) -> dict[str, Callable[..., Any]]:
        return dict(self._library)

    # -----------------------------------------------------------------------
    # Cache
    # -----------------------------------------------------------------------

    def clear_cache(self) -> None:
        if self._cache is not None:
            self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        if self._cache is None:
            return {"size": 0, "maxsize": 0, "hits": 0, "misses": 0, "hit_rate": 0.0, "enabled": False}
        return {**self._cache.stats, "enabled": True}
