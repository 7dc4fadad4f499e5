"""Hosting platform collaborators."""

from .base import BoardPlatform

__all__ = ["BoardPlatform"]
