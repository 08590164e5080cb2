"""
Core package — cross-cutting concerns.

Modules:
    config    — environment variables & settings
    logging   — structured JSON logging
    errors    — exception hierarchy & handlers
    security  — bearer token verification
    health    — health check aggregation
    database  — async PostgreSQL connection
    cache     — Redis client (rate-limit counters)
"""
