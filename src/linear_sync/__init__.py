"""
Cached, incrementally refreshed access to Linear issues.
"""

from .cache_store import MISSING, CacheStore, JsonFileStorage, MemoryStorage
from .filters import FilterCriteria, to_remote_filter
from .linear_client import LinearApiError, LinearMcpClient
from .retry import RetryExhaustedError, with_retry
from .service import LinearSyncService, create_service
from .sync_engine import SyncEngine, SyncError, merge_by_identity


def main() -> None:
    from .server import main as server_main

    server_main()


__all__ = [
    "MISSING",
    "CacheStore",
    "FilterCriteria",
    "JsonFileStorage",
    "LinearApiError",
    "LinearMcpClient",
    "LinearSyncService",
    "MemoryStorage",
    "RetryExhaustedError",
    "SyncEngine",
    "SyncError",
    "create_service",
    "main",
    "merge_by_identity",
    "to_remote_filter",
    "with_retry",
]
