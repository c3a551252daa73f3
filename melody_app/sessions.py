"""
Play-session leases.

A session is active while ``ended_at > now``. Expiry is computed on read and
never written; the only writes are start (close earlier leases, insert a new
one), refresh (push ``ended_at`` forward) and an explicit end.

Start and refresh are blind last-write-wins updates. Two tabs starting a
session for the same profile at the same instant can both see no active lease
and both insert one; the next start closes them again.
"""
import math
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlmodel import Session

from . import crud, models
from .config import settings
from .errors import ForbiddenError, NotFoundError, ValidationError, session_expired
from .logging_utils import get_logger

logger = get_logger("melody.sessions")

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20


def session_dto(gs: models.GameSession, now: datetime) -> dict:
    return {
        "id": gs.id,
        "childId": gs.profile_id,
        "isActive": crud.as_utc(gs.ended_at) > now,
        "startedAt": crud.iso(gs.started_at),
        "endedAt": crud.iso(gs.ended_at),
        "createdAt": crud.iso(gs.created_at),
        "updatedAt": crud.iso(gs.updated_at),
    }


class SessionManager:
    def __init__(
        self,
        session: Session,
        clock: Callable[[], datetime] = crud.utcnow,
        duration_minutes: Optional[int] = None,
        refresh_minutes: Optional[int] = None,
    ):
        self.session = session
        self.clock = clock
        self.duration_minutes = duration_minutes or settings.SESSION_MINUTES
        self.refresh_minutes = refresh_minutes or settings.REFRESH_MINUTES

    def start_session(self, profile_id: str) -> dict:
        now = self.clock()
        closed = 0
        for prior in crud.get_active_sessions(self.session, profile_id, now):
            prior.ended_at = now
            prior.updated_at = now
            self.session.add(prior)
            closed += 1
        gs = crud.create_session(self.session, profile_id, now, self.duration_minutes)
        self.session.commit()
        self.session.refresh(gs)
        logger.info(
            "session_started",
            extra={"profile_id": profile_id, "session_id": gs.id, "ended_at": crud.iso(gs.ended_at)},
        )
        if closed:
            logger.debug("sessions_closed", extra={"profile_id": profile_id, "event": f"closed={closed}"})
        return {
            "sessionId": gs.id,
            "startedAt": crud.iso(gs.started_at),
            "endedAt": crud.iso(gs.ended_at),
            "isActive": True,
        }

    def _load_owned(self, session_id: str, owner_id: str) -> models.GameSession:
        gs = crud.get_session_by_id(self.session, session_id)
        if gs is None:
            raise NotFoundError("Session not found")
        profile = crud.get_profile(self.session, gs.profile_id)
        if profile is None or profile.parent_id != owner_id:
            raise ForbiddenError("Session does not belong to this parent")
        return gs

    def refresh_session(self, session_id: str, owner_id: str) -> dict:
        gs = self._load_owned(session_id, owner_id)
        now = self.clock()
        ended_at = crud.as_utc(gs.ended_at)
        if ended_at <= now:
            raise ValidationError("Session has expired", {"session": "Session has expired"})
        gs.ended_at = ended_at + timedelta(minutes=self.refresh_minutes)
        gs.updated_at = now
        self.session.add(gs)
        self.session.commit()
        self.session.refresh(gs)
        logger.info("session_refreshed", extra={"session_id": gs.id, "ended_at": crud.iso(gs.ended_at)})
        return {
            "sessionId": gs.id,
            "endedAt": crud.iso(gs.ended_at),
            "message": f"Session extended by {self.refresh_minutes} minutes",
        }

    def end_session(self, session_id: str, owner_id: str) -> None:
        gs = self._load_owned(session_id, owner_id)
        now = self.clock()
        if crud.as_utc(gs.ended_at) <= now:
            raise ValidationError("Session is already ended", {"session": "Session is already ended"})
        gs.ended_at = now
        gs.updated_at = now
        self.session.add(gs)
        self.session.commit()
        logger.info("session_ended", extra={"session_id": gs.id, "profile_id": gs.profile_id})

    def verify_session(self, session_id: str) -> bool:
        gs = crud.get_session_by_id(self.session, session_id)
        if gs is None:
            return False
        return crud.as_utc(gs.ended_at) > self.clock()

    def require_active(self, session_id: Optional[str], profile_id: str) -> models.GameSession:
        """Fail fast unless the session is live and belongs to the profile."""
        if not session_id:
            raise ValidationError("Session ID is required", {"sessionId": "Session ID is required"})
        gs = crud.get_session_by_id(self.session, session_id)
        if gs is None or gs.profile_id != profile_id:
            raise session_expired()
        if crud.as_utc(gs.ended_at) <= self.clock():
            raise session_expired()
        return gs

    def list_sessions(
        self,
        profile_id: str,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        active: Optional[bool] = None,
    ) -> dict:
        page = page if page and page > 0 else 1
        page_size = min(page_size, MAX_PAGE_SIZE) if page_size and page_size > 0 else DEFAULT_PAGE_SIZE
        now = self.clock()
        rows, total = crud.list_sessions(
            self.session, profile_id, now, offset=(page - 1) * page_size, limit=page_size, active=active
        )
        return {
            "data": [session_dto(r, now) for r in rows],
            "pagination": {
                "page": page,
                "pageSize": page_size,
                "totalItems": total,
                "totalPages": math.ceil(total / page_size),
            },
        }
