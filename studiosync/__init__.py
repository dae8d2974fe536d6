"""StudioSync - resumable studio data import pipeline."""

__version__ = "0.1.0"
