"""
Answer checking, scoring and level progression.

Scoring: a correct answer earns ``SCORE_TIERS[failures so far]`` (10, 7, 5 by
default) and does not consume an attempt. A wrong answer consumes one; the
last allowed wrong answer closes the task with 0 points. Only scored tasks
count towards the next level.
"""
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from sqlmodel import Session

from . import crud
from .catalog import SequenceCatalog, is_valid_note, split_notes
from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .logging_utils import get_logger
from .profiles import ProfileStore
from .sessions import SessionManager

logger = get_logger("melody.evaluator")


def score_for(prior_failures: int, tiers: Optional[Sequence[int]] = None) -> int:
    tiers = tiers or settings.SCORE_TIERS
    if prior_failures < 0:
        prior_failures = 0
    return tiers[min(prior_failures, len(tiers) - 1)]


def parse_answer(answer: str) -> List[str]:
    """Split a dash-joined answer, rejecting anything that is not a note."""
    tokens = split_notes(answer or "")
    if not tokens:
        raise ValidationError("Answer is required", {"answer": "Answer is required"})
    bad = [t for t in tokens if not is_valid_note(t)]
    if bad:
        raise ValidationError("Answer contains invalid notes", {"answer": "Answer contains invalid notes"})
    return tokens


class AnswerEvaluator:
    def __init__(
        self,
        session: Session,
        sessions: Optional[SessionManager] = None,
        catalog: Optional[SequenceCatalog] = None,
        profiles: Optional[ProfileStore] = None,
        clock: Callable[[], datetime] = crud.utcnow,
    ):
        self.session = session
        self.clock = clock
        self.sessions = sessions or SessionManager(session, clock=clock)
        self.catalog = catalog or SequenceCatalog(session)
        self.profiles = profiles or ProfileStore(session)
        self.max_attempts = settings.MAX_ATTEMPTS
        self.tasks_per_level = settings.TASKS_PER_LEVEL
        self.max_level = settings.MAX_LEVEL

    def submit(self, profile_id: str, sequence_id: str, answer: str, session_id: Optional[str]) -> dict:
        self.sessions.require_active(session_id, profile_id)
        tokens = parse_answer(answer)

        task = crud.get_open_task(self.session, profile_id, sequence_id)
        if task is None:
            if crud.has_completed_task(self.session, profile_id, sequence_id):
                raise ConflictError("Task already completed")
            raise NotFoundError("Task not found")
        entry = self.catalog.get(sequence_id)
        if entry is None:
            raise NotFoundError("Sequence not found")

        now = self.clock()
        prior = task.attempts_used or 0
        correct = split_notes(entry.ending) == tokens
        if correct:
            attempts = prior
            score = score_for(prior)
        else:
            attempts = min(prior + 1, self.max_attempts)
            score = 0
        completed = correct or attempts >= self.max_attempts

        counts = completed and score > 0
        claimed = crud.record_attempt(
            self.session,
            task.id,
            prior,
            attempts,
            score=score,
            completed_at=now if completed else None,
        )
        if not claimed:
            # another tab answered this task between our read and write
            self.session.rollback()
            raise ConflictError("Task was already answered")
        try:
            progress = self.profiles.record_result(
                profile_id,
                score if completed else 0,
                now,
                counts_towards_level=counts,
                tasks_per_level=self.tasks_per_level,
                max_level=self.max_level,
            )
        except NotFoundError:
            self.session.rollback()
            raise
        level_completed = counts and progress.completed_tasks_in_level == 0
        next_level = progress.current_level_id
        self.session.commit()

        logger.info(
            "answer_submitted",
            extra={
                "profile_id": profile_id,
                "sequence_id": sequence_id,
                "attempts_used": attempts,
                "score": score,
            },
        )
        if level_completed:
            logger.info("level_up", extra={"profile_id": profile_id, "level_id": next_level})

        return {
            "score": score,
            "attemptsUsed": attempts,
            "levelCompleted": level_completed,
            "nextLevel": next_level,
            "completedTasksInLevel": progress.completed_tasks_in_level,
            "totalScore": progress.total_score,
        }
