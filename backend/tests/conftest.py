from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import gatekeeper.main as main_module
from gatekeeper.config import settings
from gatekeeper.database import Base
from gatekeeper.main import app
from gatekeeper.middleware.rate_limit import limiter
from gatekeeper.services import vdf


@pytest.fixture(scope="session")
def group_params():
    """A 1024-bit group, generated once per test run."""
    return vdf.setup(80)


@pytest.fixture
def db_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_engine, session_factory, group_params):
    """Test client on the test database, with small difficulties and no rate limiting."""
    limiter.enabled = False

    with (
        patch.object(settings, "vdf_modulus_hex", group_params.modulus_hex),
        patch.object(settings, "vdf_security_bits", group_params.security_bits),
        patch.object(settings, "base_difficulty", 16),
        patch.object(settings, "max_difficulty", 64),
        patch.object(settings, "difficulty_recalibrate_seconds", 3600),
        patch.object(settings, "session_sweep_seconds", 3600),
        patch.object(main_module, "engine", db_engine),
        patch.object(main_module, "SessionLocal", session_factory),
    ):
        with TestClient(app) as test_client:
            yield test_client

    limiter.enabled = True
