import os
from datetime import date, datetime, timedelta

import pytest
import pytz
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("SCHEDULER_ENABLED", "false")

from database import get_db, init_db
from gamification import seed_achievements
from models import Group, GroupStatus, TaskTemplate, User
from store import ChallengeStore

START = date(2025, 3, 1)


def at(day_number: int, hour: int = 12) -> datetime:
    """Hora UTC `hour` del día `day_number` de un reto que empieza en START"""
    day = START + timedelta(days=day_number - 1)
    return datetime(day.year, day.month, day.day, hour, tzinfo=pytz.utc)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    seed_achievements(session)
    yield session
    session.close()


@pytest.fixture
def store(db):
    return ChallengeStore(db)


@pytest.fixture
def make_user(db):
    def _make_user(name="Ana"):
        user = User(name=name)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def make_templates(db):
    """make_templates([10, 15]) → conjunto por defecto con esos pesos"""
    def _make_templates(weights, user_id=None, group_id=None, prefix="Tarea"):
        templates = [
            TaskTemplate(
                name=f"{prefix} {i + 1}",
                weight=w,
                is_default=user_id is None and group_id is None,
                created_by=user_id,
                group_id=group_id,
            )
            for i, w in enumerate(weights)
        ]
        db.add_all(templates)
        db.commit()
        for t in templates:
            db.refresh(t)
        return templates
    return _make_templates


@pytest.fixture
def make_group(db):
    def _make_group(name="Grupo", total_days=30, created_by=None, status=GroupStatus.published.value):
        group = Group(name=name, total_days=total_days, created_by=created_by, status=status)
        db.add(group)
        db.commit()
        db.refresh(group)
        return group
    return _make_group


@pytest.fixture
def client(session_factory, db):
    from fastapi.testclient import TestClient
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    from auth import create_access_token

    def _auth_headers(user):
        return {"Authorization": f"Bearer {create_access_token(user.id)}"}
    return _auth_headers
