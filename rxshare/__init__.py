"""Time-limited prescription sharing and patient identity linking."""

__version__ = "0.1.0"
