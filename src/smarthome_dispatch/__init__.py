"""Command dispatch and retry engine for smart home devices."""

__version__ = "0.3.0"
