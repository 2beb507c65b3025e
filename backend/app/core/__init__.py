"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON logging
    errors          — exception hierarchy & handlers
    database        — async SQLAlchemy engine & session factory
    middleware      — request logging & correlation ids
    health          — store, change feed and sync probes
"""
