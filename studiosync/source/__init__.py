"""Source API client."""

from studiosync.source.client import Page, SourceAPIClient

__all__ = ["Page", "SourceAPIClient"]
