from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import and_, case, update
from sqlmodel import Session

from . import crud, models
from .errors import ForbiddenError, NotFoundError


@dataclass
class Progress:
    profile_id: str
    current_level_id: int
    total_score: int
    completed_tasks_in_level: int
    last_played_at: Optional[datetime] = None


class ProfileStore:
    """Narrow view of child profiles used by the game: ownership and progress."""

    def __init__(self, session: Session):
        self.session = session

    def get(self, profile_id: str) -> models.ChildProfile:
        profile = crud.get_profile(self.session, profile_id)
        if profile is None:
            raise NotFoundError("Profile not found")
        return profile

    def validate_ownership(self, profile_id: str, parent_id: str) -> models.ChildProfile:
        profile = self.get(profile_id)
        if profile.parent_id != parent_id:
            raise ForbiddenError("Profile does not belong to this parent")
        return profile

    def progress(self, profile_id: str) -> Progress:
        p = self.get(profile_id)
        return Progress(
            profile_id=p.id,
            current_level_id=p.current_level_id,
            total_score=p.total_score,
            completed_tasks_in_level=p.completed_tasks_in_level,
            last_played_at=crud.as_utc(p.last_played_at),
        )

    def record_result(
        self,
        profile_id: str,
        score: int,
        played_at: datetime,
        counts_towards_level: bool,
        tasks_per_level: int,
        max_level: int,
    ) -> Progress:
        """Apply a finished or attempted task to the profile row.

        Counters are incremented in SQL against the current row values, so
        concurrent results for one profile each land once. The caller commits.
        """
        P = models.ChildProfile
        values = {"total_score": P.total_score + score, "last_played_at": played_at}
        if counts_towards_level:
            rolls_over = P.completed_tasks_in_level + 1 >= tasks_per_level
            values["completed_tasks_in_level"] = case(
                (rolls_over, 0), else_=P.completed_tasks_in_level + 1
            )
            values["current_level_id"] = case(
                (and_(rolls_over, P.current_level_id < max_level), P.current_level_id + 1),
                else_=P.current_level_id,
            )
        result = self.session.execute(
            update(P).where(P.id == profile_id).values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError("Profile not found")
        profile = self.get(profile_id)
        self.session.refresh(profile)
        return self.progress(profile_id)
