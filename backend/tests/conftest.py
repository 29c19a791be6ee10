"""
Shared fixtures: an in-memory SQLite database per test and seeded owner/product rows.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WAYBACK_ENABLED", "false")

from uuid import uuid4

import pytest


@pytest.fixture
def db():
    """Fresh schema per test on the shared in-memory engine."""
    from productguard.database import Base, SessionLocal, engine
    from productguard.models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def owner(db):
    from productguard.models.db_models import UserDB

    user = UserDB(id=str(uuid4()), email=f"owner-{uuid4().hex[:8]}@example.com", role="user")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def stranger(db):
    from productguard.models.db_models import UserDB

    user = UserDB(id=str(uuid4()), email=f"stranger-{uuid4().hex[:8]}@example.com", role="user")
    db.add(user)
    db.commit()
    return user


@pytest.fixture
def product(db, owner):
    from productguard.models.db_models import ProductDB

    product = ProductDB(
        id=str(uuid4()),
        user_id=owner.id,
        name="Ultimate Course",
        original_text="Module 1: how to build a funnel that converts.",
        whitelist_urls=[],
    )
    db.add(product)
    db.commit()
    return product


def make_signal(**overrides):
    """Raw detection signal dict, as the detection collaborator sends it."""
    signal = {
        "source_url": "https://t.me/leakedcourses/123",
        "platform": "telegram",
        "match_confidence": 0.85,
        "audience_size": "12.4K members",
        "monetization_detected": False,
        "estimated_revenue_loss": 250,
        "infrastructure": {"hosting_provider": "Telegram FZ-LLC", "country": "AE"},
        "evidence": {
            "match_type": "phrase",
            "matched_excerpts": ["how to build a funnel that converts"],
            "keywords": ["funnel"],
            "page_title": "Leaked Courses",
        },
    }
    signal.update(overrides)
    return signal


@pytest.fixture
def ingest(db, product):
    """Ingest a candidate for the seeded product and return the record."""
    from productguard.services.lifecycle import InfringementService

    def _ingest(**overrides):
        infringement, _ = InfringementService(db).ingest_candidate(product.id, make_signal(**overrides))
        return infringement

    return _ingest


@pytest.fixture
def state_machine(db):
    from productguard.services.lifecycle import InfringementStateMachine, ProductOwnershipAuthorizer

    return InfringementStateMachine(db, ProductOwnershipAuthorizer(db))


@pytest.fixture
def verified(db, ingest, owner, state_machine):
    """An infringement already moved to active."""
    infringement = ingest()
    state_machine.transition(infringement.id, "verify", owner.id)
    db.refresh(infringement)
    return infringement
