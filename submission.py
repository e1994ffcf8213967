"""
Starting and finalizing timed attempts.

Manual submits, beacon submits and timer expiry all finalize through
SubmissionCoordinator.submit(). The unique attempt index decides which of
several racing callers wins; everything here only narrows the window.
"""

import logging
from datetime import datetime
from typing import Awaitable, Callable, List, Optional, Tuple

from errors import AuthenticationFailure, DuplicateAttempt, Forbidden, NotFound, PortalError, SessionConflict
from grading import grade
from notifications import NotificationSink
from schemas import (
    Assignment, Attempt, Identity, MockTest, OptionView, QuestionView, StartTestResponse, SubmitResult,
    SubmittedAnswer,
)
from sessions import SessionRegistry, TerminationReason, TimedSession
from stores import AssignmentStore, AttemptStore, Clock, MockTestStore, utcnow

logger = logging.getLogger(__name__)

Authenticator = Callable[[str], Awaitable[Identity]]


def question_views(test: MockTest) -> List[QuestionView]:
    """Questions as shown to a student: no correctness flags, no explanations."""
    return [
        QuestionView(
            id=q.id,
            prompt=q.prompt,
            options=[OptionView(id=o.id, text=o.text) for o in q.options],
            points=q.points,
        )
        for q in test.questions
    ]


class SubmissionCoordinator:
    def __init__(
        self,
        tests: MockTestStore,
        assignments: AssignmentStore,
        attempts: AttemptStore,
        sessions: SessionRegistry,
        notifications: NotificationSink,
        authenticate: Authenticator,
        clock: Clock = utcnow,
    ):
        self._tests = tests
        self._assignments = assignments
        self._attempts = attempts
        self._sessions = sessions
        self._notifications = notifications
        self._authenticate = authenticate
        self._clock = clock

    async def start_test(self, identity: Identity, test_id: str) -> StartTestResponse:
        _require_student(identity)
        test, assignment, completed = await self._eligibility(identity.id, test_id)
        if assignment.attempts_exhausted(completed):
            raise Forbidden("Maximum attempts reached for this test")
        if self._sessions.get(identity.id, test_id) is not None:
            raise SessionConflict("This test is already in progress")

        attempt_number = completed + 1
        await self._attempts.delete_incomplete(identity.id, test_id)
        # the in-progress placeholder doubles as a guard against two concurrent starts
        placeholder = await self._attempts.create(Attempt(
            student_id=identity.id,
            test_id=test_id,
            assignment_id=assignment.id,
            attempt_number=attempt_number,
            total_questions=test.total_questions,
            started_at=self._clock(),
            is_completed=False,
        ))
        try:
            session = await self._sessions.start(
                identity.id, test_id, assignment.time_limit, attempt_number, self._auto_submit,
            )
        except RuntimeError:
            # no timer could be scheduled; only this attempt is lost
            await self._attempts.delete_incomplete(identity.id, test_id)
            raise

        logger.info("Student %s started test %s (attempt %s, placeholder %s)",
                    identity.id, test_id, attempt_number, placeholder.id)
        return StartTestResponse(
            test_id=test_id,
            assignment_id=assignment.id,
            title=test.title,
            description=test.description,
            instructions=test.instructions,
            questions=question_views(test),
            total_questions=test.total_questions,
            total_points=test.total_points,
            time_limit=assignment.time_limit,
            attempt_number=attempt_number,
            max_attempts=assignment.max_attempts,
            due_date=assignment.due_date,
            server_start_time=session.started_at,
        )

    async def submit(
        self,
        identity: Optional[Identity],
        test_id: str,
        answers: List[SubmittedAnswer],
        time_spent: float = 0,
        started_at: Optional[datetime] = None,
        beacon: Optional[str] = None,
        reason: TerminationReason = TerminationReason.MANUAL,
        expected_attempt: Optional[int] = None,
    ) -> SubmitResult:
        via_beacon = identity is None
        if via_beacon:
            if not beacon:
                raise AuthenticationFailure("Not authorized, no token provided")
            identity = await self._authenticate(beacon)
        _require_student(identity)
        student_id = identity.id
        # read before any storage call so a racing submit cannot terminate it first
        session = self._sessions.get(student_id, test_id)
        pinned = expected_attempt if expected_attempt is not None else (
            session.attempt_number if session is not None else None
        )

        test, assignment, completed = await self._eligibility(student_id, test_id)
        if assignment.attempts_exhausted(completed):
            raise Forbidden("Maximum attempts reached for this test")
        if pinned is not None and completed >= pinned:
            # the attempt this session was opened for is already recorded
            raise DuplicateAttempt()
        if via_beacon and session is None and await self._attempts.find_incomplete(student_id, test_id) is None:
            # nothing in progress: a tab-close beacon after a completed submit
            raise DuplicateAttempt()

        next_number = completed + 1
        await self._attempts.delete_incomplete(student_id, test_id)
        result = grade(test, answers)
        now = self._clock()
        attempt = await self._attempts.create(Attempt(
            student_id=student_id,
            test_id=test_id,
            assignment_id=assignment.id,
            attempt_number=next_number,
            answers=result.answers,
            score=result.score,
            percentage=result.percentage,
            total_questions=result.total_questions,
            correct_answers=result.correct_answers,
            time_spent=time_spent,
            started_at=session.started_at if session is not None else (started_at or now),
            submitted_at=now,
            is_completed=True,
        ))
        logger.info("Recorded attempt %s for student=%s test=%s: %s/%s (%s%%)",
                    attempt.attempt_number, student_id, test_id, result.score, result.total_points, result.percentage)

        await self._sessions.terminate(student_id, test_id, reason, {
            "recorded": True,
            "attempt_number": attempt.attempt_number,
            "score": attempt.score,
            "percentage": attempt.percentage,
        })
        await self._notify_submission(student_id, test, attempt)
        return SubmitResult(
            attempt_id=attempt.id,
            score=attempt.score,
            percentage=attempt.percentage,
            correct_answers=attempt.correct_answers,
            total_questions=attempt.total_questions,
            time_spent=attempt.time_spent,
            attempt_number=attempt.attempt_number,
            submitted_at=now,
        )

    async def results(self, identity: Identity, test_id: str) -> List[Attempt]:
        if await self._tests.get(test_id) is None:
            raise NotFound("Test not found")
        if identity.role == "student":
            return [a for a in await self._attempts.find_all(identity.id, test_id) if a.is_completed]
        return await self._attempts.find_by_test(test_id)

    async def _eligibility(self, student_id: str, test_id: str) -> Tuple[MockTest, Assignment, int]:
        test = await self._tests.get_published(test_id)
        assignment = await self._assignments.find_for_student(student_id, test_id)
        if assignment is None:
            raise Forbidden("You are not assigned to this test")
        if assignment.is_past_due(self._clock()):
            raise Forbidden("Test submission deadline has passed")
        completed = await self._attempts.count_completed(student_id, test_id)
        return test, assignment, completed

    async def _auto_submit(self, session: TimedSession) -> None:
        identity = Identity(id=session.student_id, role="student")
        try:
            await self.submit(
                identity,
                session.test_id,
                session.auto_saved_answers,
                time_spent=session.elapsed_seconds(self._clock()),
                reason=TerminationReason.EXPIRED,
                expected_attempt=session.attempt_number,
            )
        except DuplicateAttempt:
            logger.info("Auto-submit for %s-%s lost to an earlier submission", session.student_id, session.test_id)
        except PortalError as exc:
            logger.warning("Auto-submit rejected for %s-%s: %s", session.student_id, session.test_id, exc.message)

    async def _notify_submission(self, student_id: str, test: MockTest, attempt: Attempt) -> None:
        submitted_at = attempt.submitted_at.isoformat() if attempt.submitted_at else None
        await self._notifications.notify_quietly(student_id, "test_submitted", {
            "test_id": attempt.test_id,
            "test_title": test.title,
            "submitted_at": submitted_at,
        })
        await self._notifications.notify_quietly(student_id, "test_result", {
            "test_id": attempt.test_id,
            "test_title": test.title,
            "score": attempt.score,
            "percentage": attempt.percentage,
        })


def _require_student(identity: Identity) -> None:
    if identity.role != "student":
        raise Forbidden("Only students can take tests")
