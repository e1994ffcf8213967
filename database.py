"""
MongoDB access helpers.

Collections are named after the lowercase schema class (user, test, assignment,
attempt, notification). pymongo connects lazily, so importing this module never
touches the network.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.database import Database

from config import settings

client = MongoClient(settings.DATABASE_URL, tz_aware=True)
db = client[settings.DATABASE_NAME]


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]], database: Optional[Database] = None) -> str:
    """Insert a document with created_at/updated_at stamps and return its id as a string."""
    target = db if database is None else database
    doc = data.model_dump(exclude={"id"}) if isinstance(data, BaseModel) else dict(data)
    now = datetime.now(timezone.utc)
    doc.setdefault("created_at", now)
    doc["updated_at"] = now
    result = target[collection_name].insert_one(doc)
    return str(result.inserted_id)


def ensure_indexes(database: Database) -> None:
    """Create the indexes the portal relies on. Safe to call repeatedly."""
    database.attempt.create_index(
        [("student_id", ASCENDING), ("test_id", ASCENDING), ("attempt_number", ASCENDING)],
        unique=True,
        name="uniq_student_test_attempt",
    )
    database.attempt.create_index([("test_id", ASCENDING), ("submitted_at", DESCENDING)])
    database.assignment.create_index([("test_id", ASCENDING), ("created_at", DESCENDING)])
    database.assignment.create_index([("student_ids", ASCENDING), ("is_active", ASCENDING)])
    database.user.create_index("email", unique=True)
    database.notification.create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
