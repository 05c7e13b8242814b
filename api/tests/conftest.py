"""Pytest configuration and shared fixtures."""

import os
from datetime import timedelta

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest

from luckydraw import codes, inventory
from luckydraw.db import Base, make_engine, make_session_factory
from luckydraw.models import Activity, ActivityStatus, CodeStatus
from luckydraw.schemas import PrizeIn
from luckydraw.utils import utcnow


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'luckydraw.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_activity(db):
    def _make(status=ActivityStatus.ACTIVE, strategy="probability", start=None, end=None, **settings):
        now = utcnow()
        activity = Activity(
            name="Spring campaign",
            status=status,
            start_time=start if start is not None else now - timedelta(days=1),
            end_time=end if end is not None else now + timedelta(days=1),
            settings={"lottery_strategy": strategy, "lottery_code_format": "8_digit_number", **settings},
        )
        db.add(activity)
        db.commit()
        return activity

    return _make


@pytest.fixture
def make_prize(db):
    def _make(activity, name="Prize", total=1, probability=0.0, sort_order=0):
        return inventory.create_prize(
            db,
            activity.id,
            PrizeIn(name=name, total_quantity=total, probability=probability, sort_order=sort_order),
        )

    return _make


@pytest.fixture
def make_code(db):
    def _make(activity, code="00000001", status=CodeStatus.UNUSED, participant_info=None):
        lottery_code = codes.create_code(db, activity, code, participant_info)
        if status != CodeStatus.UNUSED:
            lottery_code.status = status
            db.commit()
        return lottery_code

    return _make


@pytest.fixture
def activity(make_activity):
    return make_activity()
