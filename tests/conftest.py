import pytest
from mongomock import MongoClient

from mongodoc import DatabaseSettings, MongoConfig, Registry


@pytest.fixture
def mock_config():
    """Fixture to create a config pointing every document at the 'mongotest' database."""
    return MongoConfig(databases={
        "default": DatabaseSettings(database="mongotest"),
        "mongotest": DatabaseSettings(database="mongotest"),
    })


@pytest.fixture
def mock_mongo_client():
    """Fixture to create a mock MongoClient."""
    return MongoClient()


@pytest.fixture
def registry(mock_config, mock_mongo_client):
    """Fixture to set up a started Registry backed by mongomock."""
    registry = Registry(config=mock_config, client=mock_mongo_client)
    registry.database().drop()
    registry.start()
    yield registry
    registry.close()
