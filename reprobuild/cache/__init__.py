"""Cache management module.

This module handles:
- Dependency fingerprints and cache keys
- The write-once dependency tree store
- Compiler object cache (ccache) configuration
"""

from reprobuild.cache.ccache import CompilerObjectCache
from reprobuild.cache.fingerprint import CacheKey, compute_cache_key
from reprobuild.cache.store import CacheEntry, DependencyCacheManager

__all__ = [
    "CacheEntry",
    "CacheKey",
    "CompilerObjectCache",
    "DependencyCacheManager",
    "compute_cache_key",
]
