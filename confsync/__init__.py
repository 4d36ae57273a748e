"""confsync — keep a live configuration directory in sync with a git remote."""

__version__ = "0.4.0"
