"""Shared utilities for the game lifecycle service."""
