"""Session-backed authorization core for the membership portal."""

__version__ = "0.1.0"
