"""
Caching module with TTL entries, single-flight fetches and coordinated
background refresh.
"""
from .core import CacheEntry, CacheLookup, CacheType
from .keys import generate_key, param_matcher, service_prefix
from .ttl_policies import TTL_CONFIG, build_ttl_config, get_ttl_for_cache_type
from .store import CacheStore
from .coalescer import FetchTimeoutError, RequestCoalescer
from .ambient import AmbientState, ManualSignalSource, SignalSource
from .refresh import RefreshCoordinator, RefreshSubscription, SubscriptionState
from .orchestrator import FetchOptions, FetchOrchestrator, FetchResult

__all__ = [
    # Core types
    "CacheEntry",
    "CacheLookup",
    "CacheType",
    # Keys
    "generate_key",
    "param_matcher",
    "service_prefix",
    # TTL policies
    "TTL_CONFIG",
    "build_ttl_config",
    "get_ttl_for_cache_type",
    # Store
    "CacheStore",
    # Coalescing
    "FetchTimeoutError",
    "RequestCoalescer",
    # Ambient signals
    "AmbientState",
    "ManualSignalSource",
    "SignalSource",
    # Refresh
    "RefreshCoordinator",
    "RefreshSubscription",
    "SubscriptionState",
    # Orchestration
    "FetchOptions",
    "FetchOrchestrator",
    "FetchResult",
]
