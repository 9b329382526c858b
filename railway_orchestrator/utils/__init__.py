"""Utility helpers shared across services."""

from .log_sanitizer import MASK, sanitize, sanitize_metadata

__all__ = ["MASK", "sanitize", "sanitize_metadata"]
