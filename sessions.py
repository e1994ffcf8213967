"""Service tracking live, timed test sessions in this process."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from config import settings
from errors import NotFound, SessionConflict
from schemas import SubmittedAnswer
from stores import Clock, utcnow

logger = logging.getLogger(__name__)

SessionKey = Tuple[str, str]
Emitter = Callable[[str, str, Dict[str, Any]], Awaitable[None]]
ExpiryHandler = Callable[["TimedSession"], Awaitable[None]]

# (seconds remaining, level, message), least urgent first
WARNING_THRESHOLDS = (
    (300, "warning", "5 minutes remaining!"),
    (60, "critical", "1 minute remaining!"),
)


class SessionState(str, Enum):
    RUNNING = "running"
    FINALIZING = "finalizing"
    SUBMITTED = "submitted"
    AUTO_SUBMITTED = "auto_submitted"
    ABANDONED = "abandoned"


class TerminationReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"
    DISCONNECT_PRESERVED = "disconnect-preserved"


@dataclass
class TimedSession:
    student_id: str
    test_id: str
    started_at: datetime
    duration_minutes: float
    attempt_number: int
    state: SessionState = SessionState.RUNNING
    auto_saved_answers: List[SubmittedAnswer] = field(default_factory=list)
    last_auto_save_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    warned: Set[str] = field(default_factory=set)
    deadline_handle: Optional[asyncio.TimerHandle] = None
    auto_save_task: Optional[asyncio.Task] = None

    @property
    def key(self) -> SessionKey:
        return self.student_id, self.test_id

    @property
    def duration_seconds(self) -> int:
        return int(round(self.duration_minutes * 60))

    def elapsed_seconds(self, now: datetime) -> int:
        return max(0, math.floor((now - self.started_at).total_seconds()))

    def remaining_seconds(self, now: datetime) -> int:
        return max(0, self.duration_seconds - self.elapsed_seconds(now))

    def snapshot(self, now: datetime) -> Dict[str, Any]:
        return {
            "student_id": self.student_id,
            "test_id": self.test_id,
            "state": self.state.value,
            "attempt_number": self.attempt_number,
            "server_start_time": self.started_at.isoformat(),
            "duration": self.duration_minutes,
            "elapsed": self.elapsed_seconds(now),
            "remaining": self.remaining_seconds(now),
            "server_time": now.isoformat(),
            "disconnected": self.disconnected_at is not None,
        }


class SessionRegistry:
    """
    Owns every live session and its two timers: a one-shot deadline that hands the
    session to an expiry handler, and a periodic auto-save nudge to the client.

    The registry never persists anything. Constructed once per process and shut
    down with it; sessions do not survive a restart.
    """

    def __init__(self, emit: Emitter, clock: Clock = utcnow,
                 auto_save_interval: float = settings.AUTO_SAVE_INTERVAL_SECONDS) -> None:
        self._emit = emit
        self._clock = clock
        self._auto_save_interval = auto_save_interval
        self._sessions: Dict[SessionKey, TimedSession] = {}
        self._expiring: Set[asyncio.Task] = set()

    def get(self, student_id: str, test_id: str) -> Optional[TimedSession]:
        return self._sessions.get((student_id, test_id))

    def active_sessions(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [s.snapshot(now) for s in self._sessions.values()]

    def snapshot(self, student_id: str, test_id: str) -> Dict[str, Any]:
        return self._require(student_id, test_id).snapshot(self._clock())

    async def start(self, student_id: str, test_id: str, duration_minutes: float,
                    attempt_number: int, on_expire: ExpiryHandler) -> TimedSession:
        key = (student_id, test_id)
        if key in self._sessions:
            raise SessionConflict("A session for this test is already running")

        loop = asyncio.get_running_loop()
        session = TimedSession(
            student_id=student_id,
            test_id=test_id,
            started_at=self._clock(),
            duration_minutes=duration_minutes,
            attempt_number=attempt_number,
        )
        self._sessions[key] = session
        try:
            session.deadline_handle = loop.call_later(duration_minutes * 60, self._on_deadline, key, on_expire)
            session.auto_save_task = loop.create_task(self._auto_save_loop(session))
        except RuntimeError:
            self._cancel_timers(session)
            del self._sessions[key]
            raise

        logger.info("Test session started: %s-%s (%s min, attempt %s)",
                    student_id, test_id, duration_minutes, attempt_number)
        await self._emit(student_id, "test:started", {
            "test_id": test_id,
            "server_start_time": session.started_at.isoformat(),
            "duration": duration_minutes,
            "server_time": self._clock().isoformat(),
        })
        return session

    async def heartbeat(self, student_id: str, test_id: str) -> Dict[str, Any]:
        session = self._require(student_id, test_id)
        session.disconnected_at = None
        now = self._clock()
        update = {
            "test_id": test_id,
            "elapsed": session.elapsed_seconds(now),
            "remaining": session.remaining_seconds(now),
            "server_time": now.isoformat(),
        }
        await self._emit(student_id, "test:time-update", update)

        remaining = update["remaining"]
        crossed = [t for t in WARNING_THRESHOLDS if remaining <= t[0] and t[1] not in session.warned]
        if crossed and remaining > 0:
            # several thresholds crossed at once only warn at the most urgent level
            _, level, message = crossed[-1]
            session.warned.update(t[1] for t in crossed)
            await self._emit(student_id, "test:time-warning", {
                "test_id": test_id,
                "level": level,
                "remaining": remaining,
                "message": message,
            })
        return update

    async def record_auto_save(self, student_id: str, test_id: str, answers: List[SubmittedAnswer]) -> None:
        session = self._require(student_id, test_id)
        session.auto_saved_answers = list(answers)
        session.last_auto_save_at = self._clock()
        await self._emit(student_id, "test:auto-saved", {
            "test_id": test_id,
            "timestamp": session.last_auto_save_at.isoformat(),
            "success": True,
        })

    async def terminate(self, student_id: str, test_id: str, reason: TerminationReason,
                        details: Optional[Dict[str, Any]] = None) -> Optional[TimedSession]:
        if reason is TerminationReason.DISCONNECT_PRESERVED:
            raise ValueError("Disconnects preserve sessions; use preserve_on_disconnect()")
        session = self._sessions.pop((student_id, test_id), None)
        if session is None:
            return None

        self._cancel_timers(session)
        manual = reason is TerminationReason.MANUAL
        session.state = SessionState.SUBMITTED if manual else SessionState.AUTO_SUBMITTED
        logger.info("Test session terminated: %s-%s (%s)", student_id, test_id, reason.value)
        await self._emit(student_id, "test:submitted" if manual else "test:auto-submitted", {
            "test_id": test_id,
            "reason": reason.value,
            "submitted_at": self._clock().isoformat(),
            **(details or {}),
        })
        return session

    def preserve_on_disconnect(self, student_id: str) -> List[SessionKey]:
        preserved = []
        now = self._clock()
        for session in self._sessions.values():
            if session.student_id == student_id and session.state is SessionState.RUNNING:
                session.disconnected_at = now
                preserved.append(session.key)
                logger.info("Preserved test session for reconnection: %s-%s (%s)",
                            session.student_id, session.test_id, TerminationReason.DISCONNECT_PRESERVED.value)
        return preserved

    async def shutdown(self) -> None:
        tasks = []
        for session in self._sessions.values():
            self._cancel_timers(session)
            session.state = SessionState.ABANDONED
            if session.auto_save_task is not None:
                tasks.append(session.auto_save_task)
        if self._sessions:
            logger.info("Abandoning %s live test session(s) on shutdown", len(self._sessions))
        self._sessions.clear()
        for task in self._expiring:
            task.cancel()
        tasks.extend(self._expiring)
        await asyncio.gather(*tasks, return_exceptions=True)

    def _require(self, student_id: str, test_id: str) -> TimedSession:
        session = self.get(student_id, test_id)
        if session is None:
            raise NotFound("No active session for this test")
        return session

    @staticmethod
    def _cancel_timers(session: TimedSession) -> None:
        if session.deadline_handle is not None:
            session.deadline_handle.cancel()
        if session.auto_save_task is not None and session.auto_save_task is not asyncio.current_task():
            session.auto_save_task.cancel()

    def _on_deadline(self, key: SessionKey, on_expire: ExpiryHandler) -> None:
        session = self._sessions.get(key)
        if session is None or session.state is not SessionState.RUNNING:
            return
        session.state = SessionState.FINALIZING
        task = asyncio.get_running_loop().create_task(self._expire(session, on_expire))
        self._expiring.add(task)
        task.add_done_callback(self._expiring.discard)

    async def _expire(self, session: TimedSession, on_expire: ExpiryHandler) -> None:
        try:
            await on_expire(session)
        except Exception:
            logger.exception("Auto-submit failed for %s-%s", session.student_id, session.test_id)
        finally:
            if self._sessions.get(session.key) is session:
                await self.terminate(session.student_id, session.test_id, TerminationReason.EXPIRED,
                                     {"recorded": False})

    async def _auto_save_loop(self, session: TimedSession) -> None:
        while True:
            await asyncio.sleep(self._auto_save_interval)
            await self._emit(session.student_id, "test:auto-save-trigger", {"test_id": session.test_id})
