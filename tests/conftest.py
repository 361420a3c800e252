"""Pytest configuration and shared fixtures for the replbox test suite."""

import logging
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from replbox.protocol.history import History
from replbox.sandbox.engine import Sandbox
from replbox.sandbox.loader import ModuleLoader
from replbox.session.config import SessionConfig
from replbox.session.manager import Session


# Configure logging for tests
logging.basicConfig(level=logging.WARNING)


@pytest.fixture
def config() -> SessionConfig:
    """Session config that never touches the network."""
    return SessionConfig(probe_on_load=False, show_executing_delay=0.01)


@pytest.fixture
def history() -> History:
    return History()


@pytest.fixture
def sandbox(tmp_path) -> Sandbox:
    """A sandbox with a loader rooted in a temporary cache directory."""
    box = Sandbox(ModuleLoader(cache_dir=tmp_path), session_id="test")
    yield box
    box.close()


@pytest_asyncio.fixture
async def session(config: SessionConfig, history: History) -> AsyncGenerator[Session, None]:
    """Create a loaded session that's properly cleaned up."""
    session = Session(history=history, session_id="test", config=config)
    await session.load()
    yield session
    await session.close()
