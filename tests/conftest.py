"""Shared pytest configuration and fixtures."""

import os

# Set environment variables before any imports
os.environ["PARLEY_ADMIN_TOKEN"] = "test-admin-token"
os.environ["PARLEY_DB"] = ":memory:"
os.environ["PARLEY_CACHE_WARMING"] = "0"
os.environ["PARLEY_CONFIG"] = "/nonexistent/parley-test-config.yaml"
# Ensure local credentials are used in tests
os.environ.pop("PARLEY_AUTH_URL", None)
os.environ.pop("PARLEY_AUTH_MODULE", None)


import pytest

from parley import db
from parley.cache import clear_all_caches
from parley.channels import reset_channel_router
from parley.config import reset_config
from parley.metrics import metrics
from parley.presence import reset_presence_registry
from parley.service import reset_messaging_service, reset_store_executor

pytest_plugins = ["parley.testing"]


@pytest.fixture(autouse=True, scope="function")
def reset_database():
    """Reset the database and process-wide singletons before each test.

    For in-memory shared cache databases, we need to do a full reset_db()
    to clear all tables, since close_db() doesn't destroy the shared cache.
    """
    conn = db.get_connection()
    db.reset_db(conn)
    clear_all_caches()
    reset_channel_router()
    reset_presence_registry()
    reset_messaging_service()
    reset_config()
    metrics.reset()
    yield
    reset_store_executor()
    db.close_db()  # Cleanup after test
