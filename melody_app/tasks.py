"""
Serving puzzles.

An attempt record (``TaskResult``) is written when a puzzle is generated and
updated in place by every submission. A record with no ``completed_at`` is the
open task; that is what a reload resumes. The hidden ending stays on the
server: puzzles carry the beginning and the number of answer slots only.
"""
import random
from datetime import datetime
from typing import Callable, Optional

from sqlmodel import Session

from . import crud, models
from .catalog import CatalogEntry, SequenceCatalog
from .errors import NotFoundError
from .logging_utils import get_logger
from .profiles import ProfileStore

logger = get_logger("melody.tasks")


def puzzle_dto(entry: CatalogEntry, attempts_used: int = 0) -> dict:
    return {
        "sequenceId": entry.id,
        "levelId": entry.level_id,
        "sequenceBeginning": entry.beginning,
        "expectedSlots": entry.expected_slots,
        "attemptsUsed": attempts_used,
    }


class TaskOrchestrator:
    def __init__(
        self,
        session: Session,
        catalog: Optional[SequenceCatalog] = None,
        profiles: Optional[ProfileStore] = None,
        clock: Callable[[], datetime] = crud.utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.session = session
        self.catalog = catalog or SequenceCatalog(session)
        self.profiles = profiles or ProfileStore(session)
        self.clock = clock
        self.rng = rng or random.Random()

    def _resume(self, task: models.TaskResult) -> dict:
        entry = self.catalog.get(task.sequence_id)
        if entry is None:
            raise NotFoundError("Sequence not found")
        return puzzle_dto(entry, task.attempts_used)

    def current(self, profile_id: str) -> dict:
        task = crud.get_open_task(self.session, profile_id)
        if task is None:
            raise NotFoundError("No active puzzle found")
        return self._resume(task)

    def resume_or_generate(self, profile_id: str, session_id: Optional[str] = None) -> dict:
        task = crud.get_open_task(self.session, profile_id)
        if task is not None:
            logger.debug("task_resumed", extra={"profile_id": profile_id, "sequence_id": task.sequence_id})
            return self._resume(task)
        return self.generate(profile_id, session_id)

    def _pick(self, profile_id: str, level_id: int) -> CatalogEntry:
        candidates = self.catalog.sequences_for_level(level_id)
        if not candidates:
            raise NotFoundError("No sequences available for this level")
        done = crud.completed_sequence_ids(self.session, profile_id, level_id)
        fresh = [c for c in candidates if c.id not in done]
        # a fully played level starts over rather than blocking progression
        return self.rng.choice(fresh or candidates)

    def generate(self, profile_id: str, session_id: Optional[str] = None) -> dict:
        progress = self.profiles.progress(profile_id)
        entry = self._pick(profile_id, progress.current_level_id)
        crud.create_task_result(self.session, profile_id, session_id, entry.id, entry.level_id, self.clock())
        logger.info(
            "task_generated",
            extra={"profile_id": profile_id, "sequence_id": entry.id, "level_id": entry.level_id},
        )
        return puzzle_dto(entry, 0)
