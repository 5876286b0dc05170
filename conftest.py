# conftest.py

import os
import tempfile

import pytest

# Set testing environment BEFORE importing app so app.py picks TestingConfig.
# The engine is bound once at import, so every test shares one temporary file
# database and resets its tables; eager Celery tasks open their own session
# and must see rows the test committed.
os.environ["FLASK_ENV"] = "testing"
_db_fd, _temp_db = tempfile.mkstemp(suffix="_chatsync_test.db")
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{_temp_db}"

from app import app as flask_app  # noqa: E402
from chatsync.models import db  # noqa: E402


@pytest.fixture(scope="function")
def app():
    """Create and configure a test Flask application"""
    flask_app.config.update(
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key-for-testing-only",
            "MONITORING_ENABLED": False,
            "ENABLE_FILE_LOGGING": False,
            "ENABLE_CONSOLE_LOGGING": False,
            "LOG_LEVEL": "INFO",
            "SYNC_ENABLED": True,
            "SYNC_ENTITIES": ("contacts", "chats"),
            "SYNC_WORKER_ENABLED": False,
            "SYNC_AUTO_SYNC": False,
            "SYNC_AUTO_RETRY_FAILED": False,
            "SYNC_RETRY_DELAY": 0.1,
        }
    )

    from chatsync.utils.logging_config import setup_logging

    setup_logging(flask_app)

    with flask_app.app_context():
        # Drop any existing tables to ensure clean state
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture(autouse=True)
def app_context(app):
    """Automatically provide app context for all tests"""
    with app.app_context():
        yield


@pytest.fixture
def client(app):
    """Create a test client for the Flask application"""
    return app.test_client()


@pytest.fixture
def runner(app):
    """Create a test CLI runner for the Flask application"""
    return app.test_cli_runner()


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers and ensure testing environment"""
    os.environ["FLASK_ENV"] = "testing"

    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")
    config.addinivalue_line("markers", "integration: marks tests as integration tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")


def pytest_unconfigure(config):
    """Remove the shared temporary database file"""
    try:
        os.close(_db_fd)
    except OSError:
        pass
    try:
        if os.path.exists(_temp_db):
            os.unlink(_temp_db)
    except OSError:
        pass


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.slow)
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
