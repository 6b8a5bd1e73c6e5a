"""Game lifecycle service: job locks, health checks and the settlement queue."""
