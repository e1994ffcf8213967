import asyncio
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import partial
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, Form, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordRequestForm
from pydantic import ValidationError as PydanticValidationError
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from auth import Token, create_access_token, get_current_user, get_password_hash, oauth2_scheme, require_role, \
    resolve_identity, verify_password
from channels import ConnectionHub
from config import settings
from database import db, create_document, ensure_indexes
from errors import AuthenticationFailure, Forbidden, NotFound, PortalError, ValidationError
from logging_config import configure_logging
from notifications import NotificationSink
from schemas import (
    Assignment, AssignPayload, Attempt, DueDateExtension, Identity, MockTest, QuestionsUpdate, StartTestResponse,
    SubmitPayload, SubmitResult, SubmittedAnswer, User,
)
from sessions import SessionRegistry
from stores import AssignmentStore, AttemptStore, Clock, MockTestStore, object_id, utcnow
from submission import SubmissionCoordinator

logger = logging.getLogger(__name__)


@dataclass
class Portal:
    """Everything one running service shares, built once per app."""

    db: Database
    users: Collection
    tests: MockTestStore
    assignments: AssignmentStore
    attempts: AttemptStore
    hub: ConnectionHub
    notifications: NotificationSink
    sessions: SessionRegistry
    coordinator: SubmissionCoordinator


def build_portal(database: Database, clock: Clock = utcnow,
                 auto_save_interval: float = settings.AUTO_SAVE_INTERVAL_SECONDS) -> Portal:
    hub = ConnectionHub()
    tests = MockTestStore(database.test, database.assignment, clock)
    assignments = AssignmentStore(database.assignment, tests, clock)
    attempts = AttemptStore(database.attempt, clock)
    notifications = NotificationSink(database.notification, hub, clock)
    sessions = SessionRegistry(hub.emit_to_user, clock, auto_save_interval)
    coordinator = SubmissionCoordinator(
        tests, assignments, attempts, sessions, notifications,
        authenticate=partial(resolve_identity, users=database.user),
        clock=clock,
    )
    return Portal(database, database.user, tests, assignments, attempts, hub, notifications, sessions, coordinator)


def get_portal(request: Request) -> Portal:
    return request.app.state.portal


router = APIRouter()


# ---------------------- Basic Routes ----------------------
@router.get("/")
def read_root():
    return {"message": "Assessment Portal API running"}


@router.get("/health")
async def health(portal: Portal = Depends(get_portal)):
    response = {
        "backend": "running",
        "database": "unavailable",
        "environment": settings.ENVIRONMENT,
        "live_sessions": len(portal.sessions.active_sessions()),
        "collections": [],
    }
    try:
        response["collections"] = (await asyncio.to_thread(portal.db.list_collection_names))[:10]
        response["database"] = "connected"
    except PyMongoError as e:
        response["database"] = f"error: {str(e)[:80]}"
    return response


# ---------------------- Auth Endpoints ----------------------
@router.post("/auth/register", response_model=Token)
async def register(name: str = Form(...), email: str = Form(...), password: str = Form(...),
                   portal: Portal = Depends(get_portal)):
    # admins are provisioned out of band; self-service accounts are students
    user = User(name=name, email=email, password_hash=get_password_hash(password), role="student")
    try:
        uid = await asyncio.to_thread(create_document, "user", user, portal.db)
    except DuplicateKeyError:
        raise ValidationError.for_field("email", "Email already registered")
    return Token(access_token=create_access_token({"sub": uid, "role": user.role}))


@router.post("/auth/token", response_model=Token)
async def login(form_data: OAuth2PasswordRequestForm = Depends(), portal: Portal = Depends(get_portal)):
    user = await asyncio.to_thread(portal.users.find_one, {"email": form_data.username})
    if not user or not verify_password(form_data.password, user.get("password_hash", "")):
        raise AuthenticationFailure("Incorrect email or password")
    return Token(access_token=create_access_token({"sub": str(user["_id"]), "role": user.get("role", "student")}))


@router.get("/auth/me")
async def me(user: Identity = Depends(get_current_user)):
    return user


# ---------------------- Admin: Tests & Assignments ----------------------
@router.post("/admin/tests", status_code=status.HTTP_201_CREATED, response_model=MockTest)
async def create_test(payload: MockTest, user: Identity = Depends(require_role(["admin"])),
                      portal: Portal = Depends(get_portal)):
    return await portal.tests.create(payload, created_by=user.id)


@router.get("/admin/tests", response_model=List[MockTest], dependencies=[Depends(require_role(["admin"]))])
async def list_tests(portal: Portal = Depends(get_portal)):
    return await portal.tests.list()


@router.post("/admin/tests/{test_id}/publish", response_model=MockTest,
             dependencies=[Depends(require_role(["admin"]))])
async def publish_test(test_id: str, portal: Portal = Depends(get_portal)):
    return await portal.tests.publish(test_id)


@router.put("/admin/tests/{test_id}/questions", response_model=MockTest,
            dependencies=[Depends(require_role(["admin"]))])
async def update_questions(test_id: str, payload: QuestionsUpdate, portal: Portal = Depends(get_portal)):
    return await portal.tests.update_questions(test_id, payload.questions)


async def _validate_students(users: Collection, student_ids: List[str]) -> None:
    oids = [object_id(s) for s in student_ids]
    if any(o is None for o in oids):
        raise ValidationError.for_field("student_ids", "One or more invalid student IDs provided")
    found = await asyncio.to_thread(
        users.count_documents, {"_id": {"$in": oids}, "role": "student", "is_active": True},
    )
    if found != len(set(student_ids)):
        raise ValidationError.for_field("student_ids", "One or more invalid student IDs provided")


@router.post("/admin/tests/{test_id}/assign")
async def assign_test(test_id: str, payload: AssignPayload, user: Identity = Depends(require_role(["admin"])),
                      portal: Portal = Depends(get_portal)):
    await _validate_students(portal.users, payload.student_ids)
    assignment = await portal.assignments.create_or_merge(
        test_id,
        payload.student_ids,
        payload.due_date,
        time_limit=payload.time_limit,
        max_attempts=payload.max_attempts,
        assigned_by=user.id,
        replace=payload.replace,
    )
    test = await portal.tests.get(test_id)
    for student_id in dict.fromkeys(payload.student_ids):
        await portal.notifications.notify_quietly(student_id, "test_assigned", {
            "test_id": test_id,
            "test_title": test.title,
            "due_date": assignment.due_date.isoformat(),
        })
    return {
        "test_id": test_id,
        "assigned_students": len(set(payload.student_ids)),
        "due_date": assignment.due_date,
        "assignment": assignment,
    }


@router.get("/admin/tests/{test_id}/assignment", response_model=Assignment,
            dependencies=[Depends(require_role(["admin"]))])
async def get_test_assignment(test_id: str, portal: Portal = Depends(get_portal)):
    assignment = await portal.assignments.find_by_test(test_id)
    if assignment is None:
        raise NotFound("No assignment exists for this test")
    return assignment


@router.patch("/admin/tests/{test_id}/assignment/due-date", response_model=Assignment,
              dependencies=[Depends(require_role(["admin"]))])
async def extend_due_date(test_id: str, payload: DueDateExtension, portal: Portal = Depends(get_portal)):
    assignment = await portal.assignments.extend_due_date(test_id, payload.due_date)
    for student_id in assignment.student_ids:
        await portal.notifications.notify_quietly(student_id, "deadline_extended", {
            "test_id": test_id,
            "due_date": assignment.due_date.isoformat(),
        })
    return assignment


@router.get("/admin/sessions", dependencies=[Depends(require_role(["admin"]))])
async def active_sessions(portal: Portal = Depends(get_portal)):
    return portal.sessions.active_sessions()


# ---------------------- Student: Assignments, Timed Attempts ----------------------
@router.get("/student/assignments", response_model=List[Assignment])
async def my_assignments(user: Identity = Depends(require_role(["student"])), portal: Portal = Depends(get_portal)):
    return await portal.assignments.list_for_student(user.id)


@router.post("/student/tests/{test_id}/start", response_model=StartTestResponse)
async def start_test(test_id: str, user: Identity = Depends(require_role(["student"])),
                     portal: Portal = Depends(get_portal)):
    return await portal.coordinator.start_test(user, test_id)


@router.get("/student/tests/{test_id}/session")
async def session_state(test_id: str, user: Identity = Depends(require_role(["student"])),
                        portal: Portal = Depends(get_portal)):
    return portal.sessions.snapshot(user.id, test_id)


@router.post("/student/tests/{test_id}/submit", status_code=status.HTTP_201_CREATED, response_model=SubmitResult)
async def submit_test(test_id: str, request: Request, token: Optional[str] = Depends(oauth2_scheme),
                      portal: Portal = Depends(get_portal)):
    # beacons arrive as text/plain, so the body is parsed by hand rather than by FastAPI
    body = await request.body()
    try:
        payload = SubmitPayload.model_validate_json(body or b"{}")
    except PydanticValidationError as exc:
        raise ValidationError("Invalid submission payload", [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()
        ])
    # a bad header never falls through to the beacon credential
    identity = await resolve_identity(token, portal.users) if token else None
    return await portal.coordinator.submit(
        identity,
        test_id,
        payload.answers,
        time_spent=payload.time_spent,
        started_at=payload.started_at,
        beacon=payload.auth_token,
    )


@router.get("/tests/{test_id}/results", response_model=List[Attempt])
async def test_results(test_id: str, user: Identity = Depends(get_current_user), portal: Portal = Depends(get_portal)):
    return await portal.coordinator.results(user, test_id)


# ---------------------- Live session channel ----------------------
async def handle_client_event(portal: Portal, identity: Identity, message: Dict[str, Any]) -> None:
    event = message.get("event")
    data = message.get("data") or {}
    if event in ("test:heartbeat", "test:auto-save"):
        test_id = data.get("test_id")
        if not test_id:
            raise ValidationError.for_field("test_id", "test_id is required")
        if event == "test:heartbeat":
            await portal.sessions.heartbeat(identity.id, str(test_id))
        else:
            try:
                answers = [SubmittedAnswer.model_validate(a) for a in data.get("answers") or []]
            except PydanticValidationError:
                raise ValidationError.for_field("answers", "Malformed answers")
            await portal.sessions.record_auto_save(identity.id, str(test_id), answers)
    elif event == "admin:broadcast":
        if identity.role != "admin":
            raise Forbidden("Only admins can broadcast")
        await portal.hub.emit_to_role("student", "admin:notification", {
            "message": str(data.get("message", "")),
            "type": str(data.get("type", "info")),
            "timestamp": utcnow().isoformat(),
            "from": "admin",
        })
    else:
        raise ValidationError(f"Unknown event: {event}")


@router.websocket("/ws")
async def session_socket(websocket: WebSocket, token: Optional[str] = None):
    portal: Portal = websocket.app.state.portal
    try:
        identity = await resolve_identity(token, portal.users)
    except AuthenticationFailure:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    portal.hub.connect(websocket, identity)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                if not isinstance(message, dict):
                    raise ValidationError("Frames must be JSON objects")
                await handle_client_event(portal, identity, message)
            except json.JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"detail": "Invalid JSON"}})
            except PortalError as exc:
                await websocket.send_json({"event": "error", "data": exc.to_dict()})
    except WebSocketDisconnect:
        pass
    finally:
        if portal.hub.disconnect(websocket, identity):
            portal.sessions.preserve_on_disconnect(identity.id)


# ---------------------- App factory ----------------------
async def portal_error_handler(request: Request, exc: PortalError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(database: Optional[Database] = None, clock: Clock = utcnow,
               auto_save_interval: float = settings.AUTO_SAVE_INTERVAL_SECONDS) -> FastAPI:
    database = db if database is None else database
    portal = build_portal(database, clock, auto_save_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await asyncio.to_thread(ensure_indexes, database)
        yield
        await portal.sessions.shutdown()

    app = FastAPI(
        title="Assessment Portal API",
        description="Timed assessment sessions and grading",
        version="1.0.0",
        docs_url="/docs" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(PortalError, portal_error_handler)
    app.include_router(router)
    app.state.portal = portal
    return app


configure_logging()
app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
