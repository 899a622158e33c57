"""
Pytest configuration and fixtures for PDF Toolkit Backend tests.
"""

import io
import os
import shutil
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
TEST_ROOT = tempfile.mkdtemp(prefix="pdf_toolkit_test_")
os.environ["PDF_TOOLKIT_MASTER_KEY"] = "test-master-key-12345"
os.environ["PDF_TOOLKIT_UPLOAD_DIR"] = str(Path(TEST_ROOT) / "uploads")
os.environ["PDF_TOOLKIT_KEYS_DB_PATH"] = str(Path(TEST_ROOT) / "api_keys.db")
os.environ["PDF_TOOLKIT_STORAGE"] = "local"
os.environ["PDF_TOOLKIT_DATABASE"] = "memory"

from pdf_toolkit_backend.configuration import load_settings  # noqa: E402
from pdf_toolkit_backend.database import MemoryRecordStore  # noqa: E402
from pdf_toolkit_backend.dispatcher import ToolDispatcher  # noqa: E402
from pdf_toolkit_backend.handlers import build_registry  # noqa: E402
from pdf_toolkit_backend.main import app  # noqa: E402
from pdf_toolkit_backend.storage import LocalBlobStorage  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the test directories after the session."""
    yield TEST_ROOT
    shutil.rmtree(TEST_ROOT, ignore_errors=True)


@pytest.fixture
def client():
    """Create a test client for the FastAPI app."""
    return TestClient(app)


@pytest.fixture
def master_key():
    """Return the master API key for admin operations."""
    return "test-master-key-12345"


@pytest.fixture
def api_key(client, master_key):
    """Create a fresh API key; every call gets a distinct owner."""
    owner = f"owner-{os.urandom(4).hex()}"
    response = client.post("/admin/keys", json={"owner": owner}, headers={"X-API-Key": master_key})
    assert response.status_code == 201
    return response.json()["api_key"]


# Service fixtures


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        overrides={"storage": {"upload_dir": str(tmp_path / "blobs")}},
        environ={},
    )


@pytest.fixture
def store():
    return MemoryRecordStore()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStorage(tmp_path / "blobs")


@pytest.fixture
def dispatcher(store, blobs, settings):
    return ToolDispatcher(store, blobs, build_registry(settings), settings)


@pytest.fixture
def add_file(store, blobs):
    """Persist bytes and a File record the way upload intake does."""

    def _add(name: str, content: bytes, owner=None, content_type="application/pdf"):
        key = f"{os.urandom(8).hex()}{Path(name).suffix}"
        blobs.save(key, io.BytesIO(content))
        return store.create_file(
            stored_name=key,
            original_name=name,
            size=len(content),
            content_type=content_type,
            user_id=owner,
        )

    return _add
