"""MarksVault: bookmark management with a task automation engine."""

__version__ = "0.1.0"
