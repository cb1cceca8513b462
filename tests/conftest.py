"""Shared test fixtures."""

import pytest
import pytest_asyncio
import tempfile
from pathlib import Path

from huddle.collaboration.assets import AssetRegistry
from huddle.collaboration.engine import TeamMembershipEngine
from huddle.core.locks import LockManager
from huddle.persistence.database import Database


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest_asyncio.fixture
async def db(temp_dir):
    """Initialized test database."""
    database = Database(temp_dir / "test.db", busy_timeout=2.0)
    await database.initialize()
    return database


@pytest.fixture
def assets(db, temp_dir):
    """Asset registry writing blobs into the temp dir."""
    return AssetRegistry(db, root=temp_dir / "assets", url_prefix="/assets", lock_timeout=2.0)


@pytest.fixture
def engine(db, assets):
    """Membership engine over the test database."""
    return TeamMembershipEngine(
        database=db,
        assets=assets,
        locks=LockManager(timeout=2.0),
        max_avatar_bytes=1024,
    )


@pytest.fixture
def make_user(engine):
    """Factory creating user accounts through the engine's identity store."""

    async def _make(username: str):
        return await engine.identities.create_user(username)

    return _make


@pytest.fixture
def config(temp_dir):
    """Test configuration."""
    from huddle.config import HuddleConfig

    return HuddleConfig(data_dir=temp_dir, lock_timeout_seconds=2.0)
