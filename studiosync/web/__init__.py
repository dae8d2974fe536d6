"""HTTP API for StudioSync imports."""
