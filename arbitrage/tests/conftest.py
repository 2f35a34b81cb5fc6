from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from arbitrage.config import Settings
from arbitrage.models import Base
from arbitrage.repository import Repository
from arbitrage.tests.helpers import FakeSearchClient


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        perplexity_api_key="test-key",
        redis_url="",
        rate_limit_delay_seconds=0.0,
        retry_base_delay_seconds=0.0,
        rate_limit_cooldown_seconds=0.0,
        batch_delay_seconds=0.0,
    )


@pytest.fixture()
def engine():
    """In-memory SQLite shared across sessions via StaticPool."""
    eng = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def repository(session_factory) -> Repository:
    return Repository(session_factory)


@pytest.fixture()
def fake_client(settings) -> FakeSearchClient:
    return FakeSearchClient(settings)
