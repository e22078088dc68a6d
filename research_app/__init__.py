"""Open-web research pipeline service."""

__version__ = "0.1.0"
