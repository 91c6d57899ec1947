"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty logging
    errors          — exception hierarchy, HEC response classification, handlers
    health          — health check aggregation
    middleware      — request logging & correlation IDs
"""
