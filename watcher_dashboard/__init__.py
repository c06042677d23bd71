"""Local control dashboard for the Teams meeting-recording watcher."""

__version__ = "1.0.0"
