"""Sync module."""

from .engine import WatchlistSyncEngine, filter_unavailable

__all__ = ["WatchlistSyncEngine", "filter_unavailable"]
