"""
Read-only access to the note-sequence catalog.

A sequence pairs a beginning (played to the player) with a hidden ending
(the expected answer). Notes are dash-joined tokens carrying their octave,
e.g. ``C4-E4-G4`` or ``F#3-Bb3``.
"""
import re
from dataclasses import dataclass
from typing import List, Optional

from sqlmodel import Session, select

from . import models
from .cache import (
    cache_demo_sequences,
    cache_level_sequences,
    get_cached_demo_sequences,
    get_cached_level_sequences,
)
from .config import settings

NOTE_SEPARATOR = "-"
NOTE_RE = re.compile(r'^[A-G](#|b)?[0-8]$')


def split_notes(raw: str) -> List[str]:
    if not raw or not raw.strip():
        return []
    return [tok.strip() for tok in raw.split(NOTE_SEPARATOR)]


def join_notes(notes: List[str]) -> str:
    return NOTE_SEPARATOR.join(notes)


def expected_slots(sequence_end: str) -> int:
    return len(split_notes(sequence_end))


def is_valid_note(token: str) -> bool:
    return bool(NOTE_RE.match(token))


@dataclass(frozen=True)
class CatalogEntry:
    id: str
    level_id: int
    beginning: str
    ending: str

    @property
    def expected_slots(self) -> int:
        return expected_slots(self.ending)

    @classmethod
    def from_row(cls, row: models.Sequence) -> "CatalogEntry":
        return cls(id=row.id, level_id=row.level_id, beginning=row.sequence_beginning, ending=row.sequence_end)


class SequenceCatalog:
    def __init__(self, session: Session):
        self.session = session

    def sequences_for_level(self, level_id: int) -> List[CatalogEntry]:
        entries = get_cached_level_sequences(level_id)
        if entries is None:
            rows = self.session.exec(
                select(models.Sequence)
                .where(models.Sequence.level_id == level_id)
                .order_by(models.Sequence.id)
            ).all()
            entries = [CatalogEntry.from_row(r) for r in rows]
            # an empty level is not cached so a later seed shows up immediately
            if entries:
                cache_level_sequences(level_id, entries)
        return entries

    def get(self, sequence_id: str) -> Optional[CatalogEntry]:
        row = self.session.get(models.Sequence, sequence_id)
        return CatalogEntry.from_row(row) if row else None

    def demo_sequences(self, level_id: Optional[int] = None) -> List[dict]:
        """Public sequences for the demo levels, answers included.

        The demo game checks answers in the browser, so the ending is part
        of the payload here and nowhere else.
        """
        cached = get_cached_demo_sequences(level_id)
        if cached is not None:
            return cached
        stmt = select(models.Sequence).where(models.Sequence.level_id <= settings.DEMO_MAX_LEVEL)
        if level_id is not None:
            stmt = stmt.where(models.Sequence.level_id == level_id)
        rows = self.session.exec(stmt.order_by(models.Sequence.level_id, models.Sequence.id)).all()
        payload = [
            {
                "id": r.id,
                "levelId": r.level_id,
                "sequenceBeginning": r.sequence_beginning,
                "sequenceEnd": r.sequence_end,
            }
            for r in rows
        ]
        cache_demo_sequences(level_id, payload)
        return payload
