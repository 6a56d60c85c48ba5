"""Validation and token-flow simulation core for BPM workflow graphs."""

__version__ = "1.0.0"
