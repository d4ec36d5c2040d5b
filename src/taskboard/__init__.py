"""Task assignment backend: personal task lists, admin assignment and completion analytics."""

__version__ = "1.0.0"
