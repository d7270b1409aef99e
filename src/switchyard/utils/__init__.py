"""Utility helpers."""

from .pii import mask_pii

__all__ = ["mask_pii"]
