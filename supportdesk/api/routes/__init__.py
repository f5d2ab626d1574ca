"""API route modules."""

from . import tickets

__all__ = ["tickets"]
