"""
Core utilities and configuration for the Reef import pipeline.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: State store engine, session factory and table creation
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration
    cancellation: Cooperative cancellation token checked at row and batch boundaries

Usage:
    from core.config import settings
    from core.database import create_state_engine, create_session_factory
    from core.exceptions import SourceError, WriteError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Open the state store
    engine = create_state_engine()
    await init_state_store(engine)
    session_factory = create_session_factory(engine)
"""

__all__ = [
    "config",
    "database",
    "exceptions",
    "logging",
    "cancellation",
]
