# src/macocr/__init__.py
"""Text and per-line geometry extraction from images, as a batch CLI or an HTTP service."""

__version__ = "0.5.0"
