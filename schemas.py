"""
Assessment Portal Schemas

Each Pydantic model below that maps to a MongoDB collection is named after it: the
collection name is the lowercase of the class name (MockTest lives in "test").

Collections:
- user: admin and student accounts
- test: timed multiple-choice tests (questions embed their options and answer key)
- assignment: a test bound to a set of students with a due date and attempt policy
- attempt: one record per (student, test, attempt number), graded answers and score
- notification: best-effort notices fanned out to users
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, Field, computed_field, field_validator, model_validator

Role = Literal["admin", "student"]
NotificationKind = Literal["test_assigned", "deadline_extended", "test_submitted", "test_result"]

UNLIMITED_ATTEMPTS = -1


def _ensure_utc(value: datetime) -> datetime:
    # pymongo and mongomock may hand back naive datetimes; they are always UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(_ensure_utc)]


def new_object_id() -> str:
    return str(ObjectId())


class Identity(BaseModel):
    """An already-verified caller."""

    id: str
    role: Role


class User(BaseModel):
    name: str
    email: str
    password_hash: str
    role: Role = "student"
    is_active: bool = True


# ---------------------- Tests ----------------------
class Option(BaseModel):
    id: str = Field(default_factory=new_object_id)
    text: str = Field(..., min_length=1, max_length=200)
    is_correct: bool = False


class Question(BaseModel):
    id: str = Field(default_factory=new_object_id)
    prompt: str = Field(..., min_length=1, max_length=1000)
    options: List[Option]
    explanation: Optional[str] = Field(None, max_length=1000)
    points: int = Field(1, ge=1, le=10)

    @field_validator("options")
    @classmethod
    def _one_correct_option(cls, options: List[Option]) -> List[Option]:
        correct = sum(1 for o in options if o.is_correct)
        if not 2 <= len(options) <= 6 or correct != 1:
            raise ValueError("Question must have between 2 and 6 options with exactly one correct answer")
        return options

    def correct_option(self) -> Optional[Option]:
        return next((o for o in self.options if o.is_correct), None)


class MockTest(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1, max_length=100)
    description: str = Field("", max_length=500)
    instructions: str = Field("", max_length=2000)
    questions: List[Question] = Field(..., min_length=1)
    time_limit: int = Field(..., ge=15, le=180, description="Minutes")
    is_published: bool = False
    created_by: Optional[str] = None

    @computed_field
    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @computed_field
    @property
    def total_points(self) -> int:
        return sum(q.points for q in self.questions)

    def question(self, question_id: str) -> Optional[Question]:
        return next((q for q in self.questions if q.id == question_id), None)


# ---------------------- Assignments ----------------------
class Assignment(BaseModel):
    id: Optional[str] = None
    test_id: str
    student_ids: List[str] = Field(..., min_length=1)
    assigned_by: Optional[str] = None
    due_date: UTCDateTime
    time_limit: int = Field(..., ge=1, le=180, description="Effective minutes for this assignment")
    max_attempts: int = 1
    is_active: bool = True
    created_at: Optional[UTCDateTime] = None

    @field_validator("max_attempts")
    @classmethod
    def _attempt_policy(cls, value: int) -> int:
        if value != UNLIMITED_ATTEMPTS and value < 1:
            raise ValueError("Maximum attempts must be -1 (unlimited) or at least 1")
        return value

    @property
    def unlimited_attempts(self) -> bool:
        return self.max_attempts == UNLIMITED_ATTEMPTS

    def attempts_exhausted(self, completed: int) -> bool:
        return not self.unlimited_attempts and completed >= self.max_attempts

    def is_past_due(self, now: datetime) -> bool:
        return self.due_date < now


# ---------------------- Answers & Attempts ----------------------
class ByIndex(BaseModel):
    kind: Literal["index"] = "index"
    index: int


class ByOptionId(BaseModel):
    kind: Literal["option_id"] = "option_id"
    option_id: str


Selection = Annotated[Union[ByIndex, ByOptionId], Field(discriminator="kind")]


class SubmittedAnswer(BaseModel):
    """
    One answer as sent by a client.

    Clients address the chosen option either by position (selected_answer) or by
    the option's id (selected_option_id). Both wire shapes are folded into the
    tagged `selection` field here; the option id wins when both are present.
    """

    question_id: str
    selection: Optional[Selection] = None
    time_spent: float = Field(0, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _from_wire(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "selection" in data:
            return data
        data = dict(data)
        option_id = data.pop("selected_option_id", None)
        index = data.pop("selected_answer", None)
        if option_id:
            data["selection"] = {"kind": "option_id", "option_id": option_id}
        elif index is not None:
            data["selection"] = {"kind": "index", "index": index}
        return data


class GradedAnswer(BaseModel):
    question_id: str
    selected_index: Optional[int] = None
    selected_option_id: Optional[str] = None
    correct_option_id: Optional[str] = None
    is_correct: bool = False
    points_earned: int = 0
    time_spent: float = 0


class GradeResult(BaseModel):
    score: int
    percentage: int = Field(..., ge=0, le=100)
    correct_answers: int
    total_questions: int
    total_points: int
    answers: List[GradedAnswer]


class Attempt(BaseModel):
    id: Optional[str] = None
    student_id: str
    test_id: str
    assignment_id: Optional[str] = None
    attempt_number: int = Field(..., ge=1)
    answers: List[GradedAnswer] = []
    score: int = 0
    percentage: int = Field(0, ge=0, le=100)
    total_questions: int = 0
    correct_answers: int = 0
    time_spent: float = Field(0, ge=0)
    started_at: UTCDateTime
    submitted_at: Optional[UTCDateTime] = None
    is_completed: bool = False


class Notification(BaseModel):
    user_id: str
    kind: NotificationKind
    payload: Dict[str, Any] = {}
    is_read: bool = False


# ---------------------- Request / response payloads ----------------------
class QuestionsUpdate(BaseModel):
    questions: List[Question] = Field(..., min_length=1)


class AssignPayload(BaseModel):
    student_ids: List[str] = Field(..., min_length=1)
    due_date: UTCDateTime
    time_limit: Optional[int] = Field(None, ge=1, le=180)
    max_attempts: Optional[int] = None
    replace: bool = False


class DueDateExtension(BaseModel):
    due_date: UTCDateTime


class SubmitPayload(BaseModel):
    answers: List[SubmittedAnswer]
    time_spent: float = Field(0, ge=0)
    started_at: Optional[UTCDateTime] = None
    # self-contained credential for the page-unload beacon path
    auth_token: Optional[str] = None


class OptionView(BaseModel):
    id: str
    text: str


class QuestionView(BaseModel):
    id: str
    prompt: str
    options: List[OptionView]
    points: int


class StartTestResponse(BaseModel):
    test_id: str
    assignment_id: Optional[str]
    title: str
    description: str
    instructions: str
    questions: List[QuestionView]
    total_questions: int
    total_points: int
    time_limit: int
    attempt_number: int
    max_attempts: int
    due_date: datetime
    server_start_time: datetime


class SubmitResult(BaseModel):
    attempt_id: str
    score: int
    percentage: int
    correct_answers: int
    total_questions: int
    time_spent: float
    attempt_number: int
    submitted_at: datetime
