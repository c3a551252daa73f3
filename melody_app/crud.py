from sqlmodel import Session, select as sqlmodel_select
from sqlalchemy import func, desc, update
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import hashlib
import hmac
import uuid

from . import models
from .config import settings

engine = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they are always stored as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def iso(dt: Optional[datetime]) -> Optional[str]:
    dt = as_utc(dt)
    return dt.isoformat() if dt else None


def sign_parent_token(parent_id: str, secret: Optional[str] = None) -> str:
    """Sign a parent id into a "pid.sig" token."""
    key = (secret or settings.SESSION_SECRET).encode()
    sig = hmac.new(key, parent_id.encode(), hashlib.sha256).hexdigest()
    return f"{parent_id}.{sig}"


def verify_parent_token(db_session: Session, token: str, secret: Optional[str] = None) -> Optional[str]:
    """Return the parent id when the token is valid and the parent exists."""
    try:
        pid, sig = token.rsplit('.', 1)
    except (AttributeError, ValueError):
        return None
    key = (secret or settings.SESSION_SECRET).encode()
    expected = hmac.new(key, pid.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, sig):
        return None
    if db_session.get(models.Parent, pid) is None:
        return None
    return pid


def create_parent(session: Session, email: str) -> models.Parent:
    p = models.Parent(id=str(uuid.uuid4()), email=email, created_at=utcnow())
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def create_profile(session: Session, parent_id: str, name: str, level_id: int = 1) -> models.ChildProfile:
    p = models.ChildProfile(id=str(uuid.uuid4()), parent_id=parent_id, name=name, current_level_id=level_id)
    session.add(p)
    session.commit()
    session.refresh(p)
    return p


def create_sequence(session: Session, level_id: int, beginning: str, end: str) -> models.Sequence:
    s = models.Sequence(id=str(uuid.uuid4()), level_id=level_id, sequence_beginning=beginning, sequence_end=end)
    session.add(s)
    session.commit()
    session.refresh(s)
    return s


def get_profile(session: Session, profile_id: str) -> Optional[models.ChildProfile]:
    return session.get(models.ChildProfile, profile_id)


def get_session_by_id(session: Session, sid: str) -> Optional[models.GameSession]:
    return session.get(models.GameSession, sid)


def get_active_sessions(session: Session, profile_id: str, now: datetime) -> List[models.GameSession]:
    return list(session.exec(
        sqlmodel_select(models.GameSession)
        .where(models.GameSession.profile_id == profile_id)
        .where(models.GameSession.ended_at > now)
    ).all())


def create_session(session: Session, profile_id: str, now: datetime, ttl_minutes: int) -> models.GameSession:
    """Insert a session row. Callers close earlier active sessions first."""
    gs = models.GameSession(
        id=str(uuid.uuid4()),
        profile_id=profile_id,
        started_at=now,
        ended_at=now + timedelta(minutes=ttl_minutes),
        created_at=now,
    )
    session.add(gs)
    return gs


def list_sessions(
    session: Session,
    profile_id: str,
    now: datetime,
    offset: int,
    limit: int,
    active: Optional[bool] = None,
) -> Tuple[List[models.GameSession], int]:
    """Return (page rows, total count) ordered most recent first."""
    stmt = sqlmodel_select(models.GameSession).where(models.GameSession.profile_id == profile_id)
    count_stmt = sqlmodel_select(func.count(models.GameSession.id)).where(models.GameSession.profile_id == profile_id)
    if active is True:
        stmt = stmt.where(models.GameSession.ended_at > now)
        count_stmt = count_stmt.where(models.GameSession.ended_at > now)
    elif active is False:
        stmt = stmt.where(models.GameSession.ended_at <= now)
        count_stmt = count_stmt.where(models.GameSession.ended_at <= now)
    rows = session.exec(
        stmt.order_by(desc(models.GameSession.started_at)).offset(offset).limit(limit)
    ).all()
    total = session.exec(count_stmt).one()
    return list(rows), int(total or 0)


def get_open_task(session: Session, profile_id: str, sequence_id: Optional[str] = None) -> Optional[models.TaskResult]:
    """Most recent task result for the profile with no completion stamp."""
    stmt = (
        sqlmodel_select(models.TaskResult)
        .where(models.TaskResult.profile_id == profile_id)
        .where(models.TaskResult.completed_at == None)  # noqa: E711
    )
    if sequence_id is not None:
        stmt = stmt.where(models.TaskResult.sequence_id == sequence_id)
    return session.exec(
        stmt.order_by(desc(models.TaskResult.created_at), desc(models.TaskResult.id))
    ).first()


def has_completed_task(session: Session, profile_id: str, sequence_id: str) -> bool:
    row = session.exec(
        sqlmodel_select(models.TaskResult.id)
        .where(models.TaskResult.profile_id == profile_id)
        .where(models.TaskResult.sequence_id == sequence_id)
        .where(models.TaskResult.completed_at != None)  # noqa: E711
        .limit(1)
    ).first()
    return row is not None


def completed_sequence_ids(session: Session, profile_id: str, level_id: int) -> set:
    rows = session.exec(
        sqlmodel_select(models.TaskResult.sequence_id)
        .where(models.TaskResult.profile_id == profile_id)
        .where(models.TaskResult.level_id == level_id)
        .where(models.TaskResult.completed_at != None)  # noqa: E711
    ).all()
    return set(rows)


def create_task_result(
    session: Session,
    profile_id: str,
    session_id: Optional[str],
    sequence_id: str,
    level_id: int,
    now: datetime,
) -> models.TaskResult:
    tr = models.TaskResult(
        profile_id=profile_id,
        session_id=session_id,
        sequence_id=sequence_id,
        level_id=level_id,
        attempts_used=0,
        score=0,
        created_at=now,
        completed_at=None,
    )
    session.add(tr)
    session.commit()
    session.refresh(tr)
    return tr


def record_attempt(
    session: Session,
    task_id: int,
    prior_attempts: int,
    attempts_used: int,
    score: int = 0,
    completed_at: Optional[datetime] = None,
) -> bool:
    """Write an attempt onto a task only if nobody else has since.

    The row must still be open and still show ``prior_attempts``; returns
    False when another submission got there first. Does not commit.
    """
    values = {"attempts_used": attempts_used}
    if completed_at is not None:
        values["score"] = score
        values["completed_at"] = completed_at
    stmt = (
        update(models.TaskResult)
        .where(models.TaskResult.id == task_id)
        .where(models.TaskResult.completed_at.is_(None))
        .where(models.TaskResult.attempts_used == prior_attempts)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1
