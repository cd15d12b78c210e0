"""task-relay: delegate project tasks to an issue-tracker coding worker."""

__version__ = "0.3.0"
