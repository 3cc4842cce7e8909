"""Embedded feed storage: chunk files, primary, inverted and vector indexes, and a key-value store."""

__version__ = "0.1.0"