"""HTTP surface: the lifecycle trigger and admin endpoints."""
