from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Tuple

import mongomock
import pytest

from auth import create_access_token
from database import ensure_indexes
from main import build_portal
from schemas import Identity, MockTest, Option, Question


class MutableClock:
    def __init__(self, now: datetime = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingEmitter:
    def __init__(self):
        self.events: List[Tuple[str, str, Dict[str, Any]]] = []

    async def __call__(self, user_id: str, event: str, data: Dict[str, Any]) -> None:
        self.events.append((user_id, event, data))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [data for _, name, data in self.events if name == event]


def make_test(points=(1, 1), published=True, time_limit=30) -> MockTest:
    questions = [
        Question(
            prompt=f"Question {i + 1}",
            points=p,
            options=[Option(text="Right", is_correct=True), Option(text="Wrong"), Option(text="Also wrong")],
        )
        for i, p in enumerate(points)
    ]
    return MockTest(title="Algebra basics", questions=questions, time_limit=time_limit, is_published=published)


def seed_user(database, role="student", email=None, password_hash="unused") -> str:
    result = database.user.insert_one({
        "name": f"A {role}",
        "email": email or f"{role}-{database.user.count_documents({})}@example.com",
        "password_hash": password_hash,
        "role": role,
        "is_active": True,
    })
    return str(result.inserted_id)


def token_for(user_id: str, role: str) -> str:
    return create_access_token({"sub": user_id, "role": role})


@pytest.fixture
def mongo_db():
    database = mongomock.MongoClient().portal
    ensure_indexes(database)
    return database


@pytest.fixture
def clock():
    return MutableClock()


@pytest.fixture
def portal(mongo_db, clock):
    return build_portal(mongo_db, clock=clock, auto_save_interval=3600)


@pytest.fixture
def student(mongo_db):
    return Identity(id=seed_user(mongo_db, "student"), role="student")


@pytest.fixture
def admin(mongo_db):
    return Identity(id=seed_user(mongo_db, "admin"), role="admin")
