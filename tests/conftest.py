"""Pytest configuration and fixtures for contact discovery tests."""

import os
import tempfile

import pytest

# Set database path to temporary file before importing app modules
_temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
_temp_db.close()
os.environ["PCD_DB_PATH"] = _temp_db.name
# Run computations during the request unless a test starts the worker itself
os.environ["PCD_COMPUTATION_MODE"] = "inline"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Initialize test database once per session."""
    from app.database import init_db

    init_db()
    yield

    # Cleanup temp database file after all tests
    try:
        os.unlink(_temp_db.name)
    except OSError:
        pass
    # Also cleanup WAL files
    for suffix in ["-wal", "-shm"]:
        try:
            os.unlink(_temp_db.name + suffix)
        except OSError:
            pass


@pytest.fixture(autouse=True)
def boundary():
    """Fresh compute boundary with throwaway keys for every test."""
    from app.mxe import ClusterKeys, init_boundary, reset_boundary

    yield init_boundary(ClusterKeys.generate())
    reset_boundary()


@pytest.fixture
def client():
    """FastAPI test client."""
    from fastapi.testclient import TestClient

    from app.main import app

    return TestClient(app)


@pytest.fixture
def sdk(client):
    """SDK client talking to the app through the test client."""
    from pcd.client import DiscoveryClient

    return DiscoveryClient(client=client)


@pytest.fixture
def alice():
    from pcd.identity import PartyIdentity

    return PartyIdentity.generate()


@pytest.fixture
def bob():
    from pcd.identity import PartyIdentity

    return PartyIdentity.generate()


@pytest.fixture
def mallory():
    from pcd.identity import PartyIdentity

    return PartyIdentity.generate()


@pytest.fixture(autouse=True)
def clear_all_stores():
    """Clear all stores before and after each test for isolation."""
    from app.settings import clear_settings, invalidate_cache
    from app.storage import computation_store, sealed_state_store, session_store

    def _clear():
        session_store.clear()
        sealed_state_store.clear()
        computation_store.clear()
        clear_settings()
        invalidate_cache()

    # Clear before test
    _clear()

    yield

    # Clear after test
    _clear()
