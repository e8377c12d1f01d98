"""Batch conversion of scripture module archives into derived artifacts."""

__version__ = "0.1.0"
