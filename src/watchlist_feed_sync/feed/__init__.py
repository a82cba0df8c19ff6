"""Watchlist feed module."""

from .client import KIND_BY_CATEGORY, WatchlistFeedClient, parse_entry, parse_guids

__all__ = ["KIND_BY_CATEGORY", "WatchlistFeedClient", "parse_entry", "parse_guids"]
