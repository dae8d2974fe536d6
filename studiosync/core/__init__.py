"""Core infrastructure: logging, errors, background queue."""
