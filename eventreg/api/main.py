"""
FastAPI application factory and configuration.

This module creates the FastAPI application instance,
configures exception handlers and lifespan events.
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from psycopg_pool import ConnectionPool

from eventreg.adapters.repository import (
    InMemoryRegistrationRepository,
    PostgresRegistrationRepository,
    run_migrations,
)
from eventreg.api.errors import install_error_handlers
from eventreg.api.routes import router
from eventreg.config.settings import get_settings
from eventreg.domain.ports import RegistrationRepository

logger = logging.getLogger(__name__)

# OpenAPI tags for documentation grouping
tags_metadata = [
    {
        "name": "verification",
        "description": "Email verification codes, session status and redirect tokens",
    },
    {
        "name": "registrations",
        "description": "Create, upsert and update event registrations",
    },
    {
        "name": "attendee",
        "description": "Attendee portal login and token-based registration lookup",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan context manager.

    Manages application startup and shutdown:
    - Creates the configured repository unless one was injected
    - For PostgreSQL: opens the connection pool and runs migrations
    - Closes the connection pool on shutdown
    """
    settings = get_settings()
    pool = None

    logger.info("Starting application...")

    if getattr(app.state, "repository", None) is None:
        if settings.storage_backend == "postgres":
            logger.info("Connecting to database...")
            pool = ConnectionPool(
                conninfo=settings.database_url,
                min_size=settings.pool_min_size,
                max_size=settings.pool_max_size,
            )
            logger.info("Running database migrations...")
            run_migrations(pool)
            app.state.pool = pool
            app.state.repository = PostgresRegistrationRepository(pool)
        else:
            logger.info("Using in-memory storage")
            app.state.repository = InMemoryRegistrationRepository(
                issued_retention=timedelta(seconds=settings.rate_limit_window_seconds)
            )

    if settings.dev_mode:
        logger.warning("Development mode: verification code is fixed and returned to clients")

    logger.info("Application startup complete")

    yield

    # Shutdown
    logger.info("Shutting down application...")
    if pool is not None:
        pool.close()
        logger.info("Database connection pool closed")


def create_app(repository: RegistrationRepository | None = None) -> FastAPI:
    """
    Build the application.

    Args:
        repository: Use this repository instead of the configured backend
    """
    application = FastAPI(
        title="eventreg",
        description="Event registration API - Email verification, qualification and registration",
        version="0.1.0",
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )
    application.state.repository = repository
    application.state.pool = None
    install_error_handlers(application)
    application.include_router(router, prefix="/api")

    @application.get("/health", tags=["health"])
    async def health_check(request: Request) -> dict[str, str]:
        """
        Health check endpoint with database validation.

        Returns 200 OK if the application (and database, when configured)
        is healthy. Raises if the database connection fails.
        """
        pool = request.app.state.pool
        if pool is not None:
            with pool.connection() as conn:
                conn.execute("SELECT 1")
        return {"status": "healthy"}

    return application


app = create_app()
