"""
Shared fixtures for the Ground sync test suite.

Every test gets its own temporary data directory and a freshly initialized
local store seeded with one user and one project.
"""

import tempfile

import pytest
import pytest_asyncio

from ground.groundsync.local import LocalStore
from ground.groundsync.model import User

from tests.factories import make_project


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def user():
    return User(id="user_1", email="alice@example.org", display_name="Alice")


@pytest.fixture
def project():
    return make_project()


@pytest_asyncio.fixture
async def store(data_dir, user, project):
    """Initialized local store with a user and a project."""
    local_store = LocalStore(data_dir, wal_mode=False)
    await local_store.initialize()
    await local_store.insert_or_update_user(user)
    await local_store.insert_or_update_project(project)
    return local_store
