"""
Utility functions and helpers.

- deps: FastAPI dependency wiring for the orchestrator
- redact: log redaction and UTC time helpers
- redis_pool: shared async Redis connection pool
"""
