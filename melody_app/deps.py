from typing import Callable
from datetime import datetime

from fastapi import Depends, Request
from sqlmodel import Session

from . import crud
from .catalog import SequenceCatalog
from .errors import UnauthorizedError
from .evaluator import AnswerEvaluator
from .profiles import ProfileStore
from .sessions import SessionManager
from .tasks import TaskOrchestrator


def get_session():
    # one database session per request
    with Session(crud.engine) as session:
        yield session


def get_clock() -> Callable[[], datetime]:
    return crud.utcnow


def get_current_parent(request: Request, session: Session = Depends(get_session)) -> str:
    """Resolve the calling parent from a Bearer token or the parent_token cookie."""
    token = None
    auth = request.headers.get('authorization')
    if auth and auth.lower().startswith('bearer '):
        token = auth.split(' ', 1)[1].strip()
    if not token:
        token = request.cookies.get('parent_token')
    if not token:
        raise UnauthorizedError()
    parent_id = crud.verify_parent_token(session, token)
    if not parent_id:
        raise UnauthorizedError("Invalid or expired credentials")
    return parent_id


def get_profile_store(session: Session = Depends(get_session)) -> ProfileStore:
    return ProfileStore(session)


def get_catalog(session: Session = Depends(get_session)) -> SequenceCatalog:
    return SequenceCatalog(session)


def get_session_manager(
    session: Session = Depends(get_session),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> SessionManager:
    return SessionManager(session, clock=clock)


def get_task_orchestrator(
    session: Session = Depends(get_session),
    catalog: SequenceCatalog = Depends(get_catalog),
    profiles: ProfileStore = Depends(get_profile_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> TaskOrchestrator:
    return TaskOrchestrator(session, catalog=catalog, profiles=profiles, clock=clock)


def get_answer_evaluator(
    session: Session = Depends(get_session),
    sessions: SessionManager = Depends(get_session_manager),
    catalog: SequenceCatalog = Depends(get_catalog),
    profiles: ProfileStore = Depends(get_profile_store),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AnswerEvaluator:
    return AnswerEvaluator(session, sessions=sessions, catalog=catalog, profiles=profiles, clock=clock)
