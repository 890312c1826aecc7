import os
import pytest
from fastapi.testclient import TestClient
from dotenv import load_dotenv
from unittest.mock import AsyncMock

# Load the test environment FIRST, before any shopchat imports, so the
# settings singleton is built from it.
load_dotenv(dotenv_path=os.path.join(os.path.dirname(__file__), "..", ".env.test"), override=True)

from shopchat.main import app  # noqa: E402


@pytest.fixture
def mock_store():
    """An AsyncMock standing in for the MongoDB-backed stores."""
    store = AsyncMock()
    store.get_metadata.return_value = {}
    store.get_history.return_value = []
    store.get_token.return_value = None
    store.lookup_increment.return_value = None
    store.lookup_increment_by_title.return_value = None
    store.set_metadata.return_value = True
    store.append_message.return_value = True
    return store


@pytest.fixture(scope="function")
def test_client(mocker):
    """
    Provides a TestClient for API integration tests without touching MongoDB
    during startup/shutdown.
    """
    mocker.patch("shopchat.utils.lifecycle.db_service.create_indexes", new_callable=AsyncMock)
    mocker.patch("shopchat.utils.lifecycle.cache_service.close", new_callable=AsyncMock)

    # The app's lifespan (startup/shutdown events) is managed by the TestClient
    with TestClient(app) as client:
        yield client
