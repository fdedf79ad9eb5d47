"""Versioned, hash-keyed cache of externally fetched resources.

Resources returned by tools (file contents, project layouts, console output)
are kept here instead of being repeated inside every tool-result message. The
request builder renders the whole cache as a ``<resources>`` block at the top
of the system prompt, so the model always sees the latest version of each
resource exactly once.
"""

from __future__ import annotations

import hashlib
import html
import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Callable, Protocol
from urllib.parse import quote

from ...utils.tokens import estimate_tokens

__all__ = [
    "ResourceType",
    "ResourceDescriptor",
    "CachedResource",
    "CacheConfig",
    "CacheStats",
    "ResourceCacheEventType",
    "ResourceCacheEvent",
    "ResourceCacheListener",
    "ResourceCache",
    "content_hash",
]

LOGGER = logging.getLogger(__name__)


def content_hash(content: str | None) -> str:
    """Return the sha1 hex digest used for O(1) change detection."""
    return hashlib.sha1((content or "").encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------------------------------------------------------
# Descriptors
# -----------------------------------------------------------------------------


class ResourceType(str, Enum):
    """Kinds of resources a tool can hand back for caching."""

    WORKSPACE_FILE = "workspace-file"
    SOURCE_TYPE = "source-type"
    PROJECT_LAYOUT = "project-layout"
    CONSOLE_OUTPUT = "console-output"
    EXTERNAL_FILE = "external-file"
    QUERY_RESULT = "query-result"
    TRANSIENT = "transient"


@dataclass(slots=True, frozen=True)
class ResourceDescriptor:
    """Identity and provenance of a cached resource.

    Two descriptors name the same resource when their ``uri`` matches.

    URI schemes used by the built-in helpers:

    * ``workspace:///path/to/file``: files below the tool root
    * ``project:///Name/layout``: project structure listings
    * ``console:///Name``: console output
    """

    uri: str
    type: ResourceType
    display_name: str
    origin_path: str | None = None
    tool_name: str | None = None

    @property
    def is_cacheable(self) -> bool:
        return self.type is not ResourceType.TRANSIENT and bool(self.uri)

    @classmethod
    def for_file(cls, path: str, tool_name: str | None = None) -> "ResourceDescriptor":
        posix = PurePosixPath("/" + str(path).replace("\\", "/").lstrip("/"))
        return cls(
            uri=f"workspace://{quote(str(posix))}",
            type=ResourceType.WORKSPACE_FILE,
            display_name=posix.name or str(posix),
            origin_path=str(posix),
            tool_name=tool_name,
        )

    @classmethod
    def for_project_layout(cls, project_name: str, tool_name: str | None = None) -> "ResourceDescriptor":
        return cls(
            uri=f"project:///{quote(project_name)}/layout",
            type=ResourceType.PROJECT_LAYOUT,
            display_name=f"{project_name} (layout)",
            origin_path=f"/{project_name}",
            tool_name=tool_name,
        )

    @classmethod
    def for_console(cls, console_name: str, tool_name: str | None = None) -> "ResourceDescriptor":
        return cls(
            uri=f"console:///{quote(console_name)}",
            type=ResourceType.CONSOLE_OUTPUT,
            display_name=console_name,
            tool_name=tool_name,
        )

    @classmethod
    def transient(cls, tool_name: str | None = None) -> "ResourceDescriptor":
        return cls(uri="", type=ResourceType.TRANSIENT, display_name="transient", tool_name=tool_name)


# -----------------------------------------------------------------------------
# Cached Resource
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CachedResource:
    """Immutable snapshot of a resource's content at one version.

    Updates never mutate an entry: :meth:`with_updated_content` returns a new
    entry and callers replace their reference.
    """

    descriptor: ResourceDescriptor
    content: str
    version: int
    content_hash: str
    cached_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def create(cls, descriptor: ResourceDescriptor, content: str, version: int = 1) -> "CachedResource":
        return cls(
            descriptor=descriptor,
            content=content,
            version=version,
            content_hash=content_hash(content),
            cached_at=_utcnow(),
        )

    def with_updated_content(self, new_content: str) -> "CachedResource":
        return CachedResource(
            descriptor=self.descriptor,
            content=new_content,
            version=self.version + 1,
            content_hash=content_hash(new_content),
            cached_at=_utcnow(),
        )

    def has_content_changed(self, new_content: str | None) -> bool:
        return content_hash(new_content) != self.content_hash

    def estimate_token_cost(self) -> int:
        return estimate_tokens(self.content)

    def to_context_fragment(self) -> str:
        """Render the resource as an element of the ``<resources>`` block."""
        descriptor = self.descriptor
        header = (
            f'<resource uri="{html.escape(descriptor.uri)}" '
            f'type="{descriptor.type.value}" '
            f'name="{html.escape(descriptor.display_name)}" '
            f'version="{self.version}" '
            f'cached="{self.cached_at.isoformat()}">'
        )
        # A literal closing tag inside the content would end the element early.
        body = (self.content or "").replace("</resource", "&lt;/resource")
        return f"{header}\n{body}\n</resource>"

    def to_summary(self) -> str:
        return f"{self.descriptor.display_name} (v{self.version}, ~{self.estimate_token_cost()} tokens)"


# -----------------------------------------------------------------------------
# Configuration, statistics and events
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class CacheConfig:
    """Configuration for the resource cache.

    Attributes:
        max_entries: Maximum number of resources kept (``None`` = unbounded).
        max_total_tokens: Token budget across all resources (``None`` = unbounded).
    """

    max_entries: int | None = None
    max_total_tokens: int | None = None

    @property
    def bounded(self) -> bool:
        return self.max_entries is not None or self.max_total_tokens is not None


@dataclass(slots=True)
class CacheStats:
    """Counters for cache operations."""

    hits: int = 0
    misses: int = 0
    updates: int = 0
    evictions: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def to_dict(self) -> dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "updates": self.updates,
            "evictions": self.evictions,
            "invalidations": self.invalidations,
            "hit_rate": self.hit_rate,
        }


class ResourceCacheEventType(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    REMOVED = "removed"
    INVALIDATED = "invalidated"
    EVICTED = "evicted"
    CLEARED = "cleared"


@dataclass(slots=True, frozen=True)
class ResourceCacheEvent:
    """Published after the cache content changes. ``resource`` is ``None`` for CLEARED."""

    type: ResourceCacheEventType
    resource: CachedResource | None = None


class ResourceCacheListener(Protocol):
    def __call__(self, event: ResourceCacheEvent) -> None:
        ...


# -----------------------------------------------------------------------------
# Resource Cache
# -----------------------------------------------------------------------------


class ResourceCache:
    """Process-wide, thread-safe map of uri → :class:`CachedResource`.

    Individual operations are atomic; there are no multi-operation
    transactions. Eviction only happens when :class:`CacheConfig` sets a bound,
    and then removes the least recently used entries first.

    Example:
        >>> cache = ResourceCache()
        >>> descriptor = ResourceDescriptor.for_file("src/app.py", tool_name="fs.read_file")
        >>> first = cache.put(descriptor, "print('hi')")
        >>> first.version
        1
        >>> cache.put(descriptor, "print('bye')").version
        2
    """

    def __init__(self, config: CacheConfig | None = None) -> None:
        self._config = config or CacheConfig()
        self._resources: OrderedDict[str, CachedResource] = OrderedDict()
        self._origin_index: dict[str, str] = {}
        self._listeners: list[ResourceCacheListener] = []
        self._lock = threading.RLock()
        self._stats = CacheStats()

    @property
    def config(self) -> CacheConfig:
        return self._config

    def stats(self) -> CacheStats:
        return self._stats

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, uri: str) -> CachedResource | None:
        with self._lock:
            resource = self._resources.get(uri)
            if resource is None:
                self._stats.misses += 1
                return None
            self._resources.move_to_end(uri)
            self._stats.hits += 1
            return resource

    def get_by_origin(self, origin_path: str) -> CachedResource | None:
        with self._lock:
            uri = self._origin_index.get(origin_path)
            return self.get(uri) if uri is not None else None

    def contains(self, uri: str) -> bool:
        with self._lock:
            return uri in self._resources

    def __contains__(self, uri: object) -> bool:
        return isinstance(uri, str) and self.contains(uri)

    def size(self) -> int:
        with self._lock:
            return len(self._resources)

    def __len__(self) -> int:
        return self.size()

    def all(self) -> list[CachedResource]:
        """Return cached resources from least to most recently used."""
        with self._lock:
            return list(self._resources.values())

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def put(self, descriptor: ResourceDescriptor, content: str) -> CachedResource | None:
        """Add or replace a resource.

        Unchanged content keeps the current entry (and its version); changed
        content replaces it with the next version. Returns ``None`` when the
        descriptor is not cacheable.
        """
        if descriptor is None or not descriptor.is_cacheable:
            return None
        with self._lock:
            existing = self._resources.get(descriptor.uri)
            if existing is not None and not existing.has_content_changed(content):
                self._resources.move_to_end(descriptor.uri)
                return existing
            if existing is not None:
                cached = existing.with_updated_content(content)
                if cached.descriptor != descriptor:
                    cached = CachedResource.create(descriptor, content, version=cached.version)
                event_type = ResourceCacheEventType.UPDATED
                self._stats.updates += 1
            else:
                cached = CachedResource.create(descriptor, content)
                event_type = ResourceCacheEventType.ADDED
            evicted = self._evict_for(cached)
            self._resources[descriptor.uri] = cached
            self._resources.move_to_end(descriptor.uri)
            if descriptor.origin_path:
                self._origin_index[descriptor.origin_path] = descriptor.uri
        for resource in evicted:
            self._fire(ResourceCacheEvent(ResourceCacheEventType.EVICTED, resource))
        self._fire(ResourceCacheEvent(event_type, cached))
        LOGGER.info(
            "ResourceCache: cached %s (v%d, ~%d tokens)",
            descriptor.uri,
            cached.version,
            cached.estimate_token_cost(),
        )
        return cached

    def put_result(self, result: Any) -> CachedResource | None:
        """Cache a :class:`~agentloop.ai.resources.serializer.ResourceToolResult`."""
        if result is None:
            return None
        return self.put(result.descriptor, result.content)

    def get_or_load(
        self,
        descriptor: ResourceDescriptor,
        loader: Callable[[], str | None],
    ) -> CachedResource | None:
        """Return the cached entry for ``descriptor`` or load, store and return it."""
        cached = self.get(descriptor.uri) if descriptor.is_cacheable else None
        if cached is not None:
            return cached
        content = loader()
        if content is None:
            return None
        stored = self.put(descriptor, content)
        if stored is None:
            return CachedResource.create(descriptor, content)
        return stored

    def remove(self, uri: str) -> CachedResource | None:
        with self._lock:
            removed = self._drop(uri)
        if removed is not None:
            self._fire(ResourceCacheEvent(ResourceCacheEventType.REMOVED, removed))
            LOGGER.info("ResourceCache: removed %s", uri)
        return removed

    def invalidate(self, origin_path: str) -> CachedResource | None:
        """Drop the resource fetched from ``origin_path`` after it changed on disk."""
        with self._lock:
            uri = self._origin_index.get(origin_path)
            removed = self._drop(uri) if uri is not None else None
            if removed is not None:
                self._stats.invalidations += 1
        if removed is not None:
            self._fire(ResourceCacheEvent(ResourceCacheEventType.INVALIDATED, removed))
            LOGGER.info("ResourceCache: invalidated %s", origin_path)
        return removed

    def clear(self) -> int:
        with self._lock:
            count = len(self._resources)
            self._resources.clear()
            self._origin_index.clear()
        self._fire(ResourceCacheEvent(ResourceCacheEventType.CLEARED, None))
        LOGGER.info("ResourceCache: cleared %d resource(s)", count)
        return count

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def estimate_total_tokens(self) -> int:
        with self._lock:
            return sum(resource.estimate_token_cost() for resource in self._resources.values())

    def to_context_block(self) -> str:
        """Render every cached resource for injection into the system prompt."""
        with self._lock:
            resources = list(self._resources.values())
            total_tokens = sum(resource.estimate_token_cost() for resource in resources)
        if not resources:
            return ""
        lines = [
            "<resources>",
            "<!-- Currently cached resources. These are the CURRENT versions of files/data you have accessed. -->",
            "<!-- When you call tools that read these resources, the cache will be updated automatically. -->",
            f"<!-- Total: {len(resources)} resources, ~{total_tokens} tokens -->",
            "",
        ]
        for resource in resources:
            lines.append(resource.to_context_fragment())
            lines.append("")
        lines.append("</resources>")
        return "\n".join(lines) + "\n"

    def to_summary(self) -> str:
        with self._lock:
            resources = list(self._resources.values())
        if not resources:
            return "No resources cached"
        return "\n".join(f"- {resource.to_summary()}" for resource in resources)

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, listener: ResourceCacheListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: ResourceCacheListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ------------------------------------------------------------------
    # Private Helpers
    # ------------------------------------------------------------------

    def _drop(self, uri: str) -> CachedResource | None:
        removed = self._resources.pop(uri, None)
        if removed is not None and removed.descriptor.origin_path:
            if self._origin_index.get(removed.descriptor.origin_path) == uri:
                del self._origin_index[removed.descriptor.origin_path]
        return removed

    def _evict_for(self, incoming: CachedResource) -> list[CachedResource]:
        if not self._config.bounded:
            return []
        evicted: list[CachedResource] = []
        uri = incoming.descriptor.uri
        max_tokens = self._config.max_total_tokens
        if max_tokens is not None and incoming.estimate_token_cost() > max_tokens:
            LOGGER.warning(
                "ResourceCache: %s exceeds token budget (%d > %d); caching without evicting others",
                uri,
                incoming.estimate_token_cost(),
                max_tokens,
            )
            return evicted

        def others() -> list[str]:
            return [key for key in self._resources if key != uri]

        max_entries = self._config.max_entries
        if max_entries is not None:
            while others() and len(others()) > max(max_entries - 1, 0):
                evicted.append(self._drop(others()[0]))
        if max_tokens is not None:
            while others():
                current = sum(self._resources[key].estimate_token_cost() for key in others())
                if current + incoming.estimate_token_cost() <= max_tokens:
                    break
                evicted.append(self._drop(others()[0]))
        evicted = [resource for resource in evicted if resource is not None]
        self._stats.evictions += len(evicted)
        for resource in evicted:
            LOGGER.info("ResourceCache: evicted LRU resource %s", resource.descriptor.uri)
        return evicted

    def _fire(self, event: ResourceCacheEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                LOGGER.exception("Resource cache listener failed for %s", event.type.value)
