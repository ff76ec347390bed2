"""Storage and session scoring for a recommendation service."""

__version__ = "0.1.0"
