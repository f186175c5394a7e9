"""Local cache and consistency layer for mirroring remote libraries onto disk."""

__version__ = "0.1.0"
