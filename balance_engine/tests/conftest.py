import pytest
from fastapi.testclient import TestClient

from balance_engine.api import create_app

from .factories import build_engine


@pytest.fixture(params=["transactional", "compensating"])
def engine(request):
    """Engine over a fresh store, once with transactions and once with compensation."""
    engine, _ = build_engine(transactional=request.param == "transactional")
    return engine


@pytest.fixture
def engine_and_storage():
    """Transactional engine together with its store, for tests that tamper with documents."""
    return build_engine(transactional=True)


@pytest.fixture
def client():
    engine, _ = build_engine(transactional=True)
    return TestClient(create_app(engine)), engine
