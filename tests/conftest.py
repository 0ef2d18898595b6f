import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from shiftledger.config import Settings
from shiftledger.db import Base
from shiftledger.main import app, get_db, get_pos_client
from shiftledger.pos_client import PosClient


@pytest.fixture
def config() -> Settings:
    return Settings(database_url="sqlite://", pos_api_url=None, pos_api_token=None)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False)
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pos_client] = lambda: PosClient(base_url=None, token=None)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
