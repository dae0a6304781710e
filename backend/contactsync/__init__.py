"""Multi-device contact synchronisation backend."""

__version__ = "0.1.0"
