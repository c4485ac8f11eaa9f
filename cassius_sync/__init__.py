"""Google Calendar sync and CSV patient import for Cassius."""

__version__ = "0.1.0"
