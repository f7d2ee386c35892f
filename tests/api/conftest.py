import pytest
from fastapi.testclient import TestClient

from parcelflow.api.app import create_app


@pytest.fixture
def client(engine):
    """Client with the app lifespan running, so the dispatcher consumes its queue."""
    with TestClient(create_app(engine)) as client:
        yield client
