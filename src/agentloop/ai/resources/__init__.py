"""Versioned resource cache and the tool-result format that feeds it."""

from .cache import (
    CacheConfig,
    CachedResource,
    CacheStats,
    ResourceCache,
    ResourceCacheEvent,
    ResourceCacheEventType,
    ResourceDescriptor,
    ResourceType,
)
from .serializer import ResourceToolResult, deserialize, is_resource_result, serialize

__all__ = [
    "CacheConfig",
    "CachedResource",
    "CacheStats",
    "ResourceCache",
    "ResourceCacheEvent",
    "ResourceCacheEventType",
    "ResourceDescriptor",
    "ResourceToolResult",
    "ResourceType",
    "deserialize",
    "is_resource_result",
    "serialize",
]
