"""Lifecycle services: locks, settlement queue, health and jobs."""
