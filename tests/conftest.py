"""Pytest fixtures for service and API tests."""

import os
from collections.abc import Generator
from datetime import datetime, timedelta
from itertools import count

os.environ["CACHE_USE_REDIS"] = "false"
os.environ.pop("ADMIN_API_TOKEN", None)

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from alo.api.deps import get_db
from alo.db import models  # noqa: F401  # Imported for side effects
from alo.db.base import Base
from alo.core.segments import SegmentFilter
from alo.db.models import Campaign, Subscriber
from alo.main import create_app
from alo.utils.cache import cache_backend
from tests.factories import NOW, ScriptedTransport


@pytest.fixture()
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def clear_cache() -> Generator[None, None, None]:
    cache_backend.clear()
    try:
        yield
    finally:
        cache_backend.clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    app = create_app()

    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def clock():
    """A controllable clock starting at ``NOW``."""

    class FakeClock:
        def __init__(self) -> None:
            self.now = NOW

        def __call__(self) -> datetime:
            return self.now

        def advance(self, **delta: float) -> None:
            self.now = self.now + timedelta(**delta)

    return FakeClock()


@pytest.fixture()
def make_subscriber(db_session):
    sequence = count(1)

    def create(**attributes) -> Subscriber:
        number = next(sequence)
        values = {
            "endpoint": f"https://push.example.com/send/{number}",
            "p256dh": f"p256dh-{number}",
            "auth": f"auth-{number}",
            "browser": "Chrome",
            "os": "Windows",
            "device": "desktop",
            "language": "en",
            "country": "US",
            "last_seen_at": NOW - timedelta(days=1),
            "active": True,
        }
        values.update(attributes)
        subscriber = Subscriber(**values)
        db_session.add(subscriber)
        db_session.commit()
        return subscriber

    return create


@pytest.fixture()
def transport_factory():
    return ScriptedTransport


@pytest.fixture()
def make_campaign(db_session):
    def create(*, segments=(), status: str = "queued", **attributes) -> Campaign:
        values = {
            "name": "Summer sale",
            "title": "Summer sale starts now",
            "body": "Everything is 20% off until Sunday.",
            "url": "https://shop.example.com/sale",
            "status": status,
        }
        values.update(attributes)
        campaign = Campaign(**values)
        campaign.replace_segments([SegmentFilter.of(kind, items) for kind, items in segments])
        db_session.add(campaign)
        db_session.commit()
        return campaign

    return create
