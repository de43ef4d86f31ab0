"""
Core package — cross-cutting concerns.

Modules:
    config      — environment variables & settings
    logging     — structured JSON logging
    errors      — exception hierarchy & handlers
    middleware  — request logging
    health      — health check aggregation
    database    — SQLAlchemy engine & sessions
    cache       — Redis forecast cache
"""
