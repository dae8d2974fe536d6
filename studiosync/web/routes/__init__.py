"""Route modules for the StudioSync HTTP API."""
