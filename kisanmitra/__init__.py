"""Kisan Mitra - agricultural knowledge retrieval and recommendations."""

__version__ = "0.1.0"
