"""
Document-store access for tests, assignments and attempts.

pymongo is blocking, so every collection call runs through asyncio.to_thread and
the event loop stays free while the driver waits on MongoDB.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pydantic import BaseModel
from pymongo import DESCENDING
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from errors import DuplicateAttempt, Forbidden, NotFound, ValidationError
from schemas import UNLIMITED_ATTEMPTS, Assignment, Attempt, MockTest, Question

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def from_doc(model: Type[M], doc: Optional[Dict[str, Any]]) -> Optional[M]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return model.model_validate(doc)


def to_doc(data: BaseModel, now: datetime) -> Dict[str, Any]:
    doc = data.model_dump(exclude={"id"})
    if doc.get("created_at") is None:
        doc["created_at"] = now
    doc["updated_at"] = now
    return doc


# ---------------------- Tests ----------------------
class MockTestStore:
    def __init__(self, collection: Collection, assignments: Optional[Collection] = None, clock: Clock = utcnow):
        self._collection = collection
        self._assignments = assignments
        self._clock = clock

    async def create(self, test: MockTest, created_by: str) -> MockTest:
        test = test.model_copy(update={"created_by": created_by})
        result = await asyncio.to_thread(self._collection.insert_one, to_doc(test, self._clock()))
        return test.model_copy(update={"id": str(result.inserted_id)})

    async def get(self, test_id: str) -> Optional[MockTest]:
        oid = object_id(test_id)
        if oid is None:
            return None
        doc = await asyncio.to_thread(self._collection.find_one, {"_id": oid})
        return from_doc(MockTest, doc)

    async def get_published(self, test_id: str) -> MockTest:
        test = await self.get(test_id)
        if test is None or not test.is_published:
            raise NotFound("Test not found or not available")
        return test

    async def list(self) -> List[MockTest]:
        docs = await asyncio.to_thread(lambda: list(self._collection.find({}).sort("created_at", DESCENDING)))
        return [from_doc(MockTest, d) for d in docs]

    async def publish(self, test_id: str) -> MockTest:
        test = await self.get(test_id)
        if test is None:
            raise NotFound("Test not found")
        await asyncio.to_thread(
            self._collection.update_one,
            {"_id": ObjectId(test_id)},
            {"$set": {"is_published": True, "updated_at": self._clock()}},
        )
        return test.model_copy(update={"is_published": True})

    async def update_questions(self, test_id: str, questions: List[Question]) -> MockTest:
        test = await self.get(test_id)
        if test is None:
            raise NotFound("Test not found")
        if test.is_published and self._assignments is not None:
            assigned = await asyncio.to_thread(self._assignments.find_one, {"test_id": test_id})
            if assigned is not None:
                raise Forbidden("Questions of an assigned test are locked")
        updated = test.model_copy(update={"questions": questions})
        await asyncio.to_thread(
            self._collection.update_one,
            {"_id": ObjectId(test_id)},
            {"$set": {
                "questions": [q.model_dump() for q in questions],
                "total_questions": updated.total_questions,
                "total_points": updated.total_points,
                "updated_at": self._clock(),
            }},
        )
        return updated


# ---------------------- Assignments ----------------------
class AssignmentStore:
    def __init__(self, collection: Collection, tests: MockTestStore, clock: Clock = utcnow):
        self._collection = collection
        self._tests = tests
        self._clock = clock

    async def _latest(self, test_id: str) -> Optional[Dict[str, Any]]:
        # legacy duplicates may exist; the newest record is the live one
        return await asyncio.to_thread(
            self._collection.find_one,
            {"test_id": test_id, "is_active": True},
            sort=[("created_at", DESCENDING), ("_id", DESCENDING)],
        )

    async def create_or_merge(
        self,
        test_id: str,
        student_ids: List[str],
        due_date: datetime,
        time_limit: Optional[int] = None,
        max_attempts: Optional[int] = None,
        assigned_by: Optional[str] = None,
        replace: bool = False,
    ) -> Assignment:
        if not student_ids:
            raise ValidationError.for_field("student_ids", "At least one student ID is required")
        if due_date <= self._clock():
            raise ValidationError.for_field("due_date", "Due date must be in the future")
        if time_limit is not None and not 1 <= time_limit <= 180:
            raise ValidationError.for_field("time_limit", "Time limit must be between 1 and 180 minutes")
        if max_attempts is not None and max_attempts != UNLIMITED_ATTEMPTS and max_attempts < 1:
            raise ValidationError.for_field("max_attempts", "Maximum attempts must be -1 (unlimited) or at least 1")
        test = await self._tests.get_published(test_id)

        students = list(dict.fromkeys(student_ids))
        existing = await self._latest(test_id)
        now = self._clock()
        if existing is None:
            assignment = Assignment(
                test_id=test_id,
                student_ids=students,
                assigned_by=assigned_by,
                due_date=due_date,
                time_limit=time_limit or test.time_limit,
                max_attempts=1 if max_attempts is None else max_attempts,
                created_at=now,
            )
            result = await asyncio.to_thread(self._collection.insert_one, to_doc(assignment, now))
            return assignment.model_copy(update={"id": str(result.inserted_id)})

        changes: Dict[str, Any] = {"due_date": due_date, "updated_at": now}
        if time_limit:
            changes["time_limit"] = time_limit
        if max_attempts is not None:
            changes["max_attempts"] = max_attempts
        update: Dict[str, Any] = {"$set": changes}
        if replace:
            changes["student_ids"] = students
        else:
            update["$addToSet"] = {"student_ids": {"$each": students}}
        await asyncio.to_thread(self._collection.update_one, {"_id": existing["_id"]}, update)
        doc = await asyncio.to_thread(self._collection.find_one, {"_id": existing["_id"]})
        return from_doc(Assignment, doc)

    async def find_by_test(self, test_id: str) -> Optional[Assignment]:
        return from_doc(Assignment, await self._latest(test_id))

    async def find_for_student(self, student_id: str, test_id: str) -> Optional[Assignment]:
        assignment = await self.find_by_test(test_id)
        if assignment is None or student_id not in assignment.student_ids:
            return None
        return assignment

    async def list_for_student(self, student_id: str) -> List[Assignment]:
        docs = await asyncio.to_thread(
            lambda: list(self._collection.find({"student_ids": student_id, "is_active": True}).sort("due_date", 1))
        )
        return [from_doc(Assignment, d) for d in docs]

    async def extend_due_date(self, test_id: str, due_date: datetime) -> Assignment:
        if due_date <= self._clock():
            raise ValidationError.for_field("due_date", "Due date must be in the future")
        existing = await self._latest(test_id)
        if existing is None:
            raise NotFound("No assignment exists for this test")
        await asyncio.to_thread(
            self._collection.update_one,
            {"_id": existing["_id"]},
            {"$set": {"due_date": due_date, "updated_at": self._clock()}},
        )
        return from_doc(Assignment, {**existing, "due_date": due_date})


# ---------------------- Attempts ----------------------
class AttemptStore:
    """
    Attempts are unique per (student_id, test_id, attempt_number); the unique index
    created by database.ensure_indexes is what settles concurrent submissions.
    """

    def __init__(self, collection: Collection, clock: Clock = utcnow):
        self._collection = collection
        self._clock = clock

    async def count_completed(self, student_id: str, test_id: str) -> int:
        return await asyncio.to_thread(
            self._collection.count_documents,
            {"student_id": student_id, "test_id": test_id, "is_completed": True},
        )

    async def find_incomplete(self, student_id: str, test_id: str) -> Optional[Attempt]:
        doc = await asyncio.to_thread(
            self._collection.find_one,
            {"student_id": student_id, "test_id": test_id, "is_completed": False},
        )
        return from_doc(Attempt, doc)

    async def delete_incomplete(self, student_id: str, test_id: str) -> int:
        result = await asyncio.to_thread(
            self._collection.delete_many,
            {"student_id": student_id, "test_id": test_id, "is_completed": False},
        )
        if result.deleted_count:
            logger.info("Removed %s incomplete attempt(s) for student=%s test=%s",
                        result.deleted_count, student_id, test_id)
        return result.deleted_count

    async def create(self, attempt: Attempt) -> Attempt:
        try:
            result = await asyncio.to_thread(self._collection.insert_one, to_doc(attempt, self._clock()))
        except DuplicateKeyError:
            logger.warning("Duplicate attempt rejected: student=%s test=%s attempt=%s",
                           attempt.student_id, attempt.test_id, attempt.attempt_number)
            raise DuplicateAttempt()
        return attempt.model_copy(update={"id": str(result.inserted_id)})

    async def find_all(self, student_id: str, test_id: str) -> List[Attempt]:
        docs = await asyncio.to_thread(
            lambda: list(self._collection.find({"student_id": student_id, "test_id": test_id}).sort("attempt_number", 1))
        )
        return [from_doc(Attempt, d) for d in docs]

    async def find_by_test(self, test_id: str) -> List[Attempt]:
        docs = await asyncio.to_thread(
            lambda: list(self._collection.find({"test_id": test_id, "is_completed": True}).sort("submitted_at", DESCENDING))
        )
        return [from_doc(Attempt, d) for d in docs]
