"""Automatic media requests from Plex watchlist RSS feeds."""
