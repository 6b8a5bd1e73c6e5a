"""Typed models for normalized provider data."""

from .schemas import GameUpdate

__all__ = ["GameUpdate"]
