# /shopchat/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from shopchat.utils.logging import setup_logging
from shopchat.services.cache_service import cache_service
from shopchat.services.db_service import db_service
from shopchat.services.dispatcher import dispatcher_cache

# This file manages the application's lifespan, handling startup tasks like
# initializing services and shutdown tasks like cleaning up connections.

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()

    logger.info("Application starting up...")
    await db_service.create_indexes()
    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")
    await dispatcher_cache.clear()
    await cache_service.close()
    if db_service.client:
        db_service.client.close()
