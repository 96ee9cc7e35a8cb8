"""
Pytest fixtures for cln-feeder tests.

Provides mock plugin, node client and real temp-file database fixtures.
"""

import pytest
import tempfile
import os
from unittest.mock import MagicMock

from feeder.config import Config
from feeder.database import Database


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def mock_rpc():
    """Create a mock RPC interface."""
    rpc = MagicMock()

    # Default return values
    rpc.listpeerchannels.return_value = {"channels": []}
    rpc.listforwards.return_value = {"forwards": []}
    rpc.setchannel.return_value = {"channels": []}

    return rpc


@pytest.fixture
def database(temp_db_path, mock_plugin):
    """Initialized sample store backed by a temp file."""
    db = Database(temp_db_path, mock_plugin)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def mock_node():
    """Node client returning no channels and no revenue unless told otherwise."""
    node = MagicMock()
    node.list_active_channels.return_value = []
    node.revenue_since.return_value = 0
    node.set_fee.return_value = {}
    return node


@pytest.fixture
def config():
    """Small-window configuration for controller tests."""
    return Config(epochs=2, epoch_length=3600, adjustment_divisor=10, tick_interval=60)


@pytest.fixture
def sample_channel_id():
    """Sample channel ID for testing."""
    return "123x456x0"
