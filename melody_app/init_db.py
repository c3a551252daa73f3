from sqlmodel import create_engine, select, Session, SQLModel
from . import crud, models
from .cache import invalidate_catalog_cache
from .logging_utils import get_logger

logger = get_logger("melody.init_db")

# (level, beginning, hidden ending)
STARTER_SEQUENCES = [
    (1, "C4-D4-E4", "F4-G4"),
    (1, "C4-E4-G4", "C4-E4"),
    (1, "G4-F4-E4", "D4-C4"),
    (1, "E4-E4-F4-G4", "G4-F4"),
    (1, "C4-C4-G4-G4", "A4-A4-G4"),
    (1, "D4-E4-F4", "E4-D4"),
    (2, "C4-E4-G4-C5", "G4-E4-C4"),
    (2, "A4-G4-F4-E4", "D4-C4-D4"),
    (2, "F4-A4-C5", "A4-F4-C4"),
    (2, "E4-G4-E4-C4", "D4-F4-D4"),
    (2, "G4-G4-A4-G4", "C5-B4"),
    (3, "C4-D4-E4-F#4", "G4-A4-B4-C5"),
    (3, "D4-F#4-A4", "D5-A4-F#4-D4"),
    (3, "Bb3-D4-F4", "Bb4-F4-D4"),
    (3, "E4-G#4-B4", "E5-B4-G#4-E4"),
    (3, "G3-B3-D4", "G4-D4-B3-G3"),
]


def seed_catalog(session: Session) -> int:
    """Insert the starter sequences when the catalog is empty."""
    if session.exec(select(models.Sequence.id).limit(1)).first() is not None:
        return 0
    for level, beginning, end in STARTER_SEQUENCES:
        crud.create_sequence(session, level, beginning, end)
    invalidate_catalog_cache()
    return len(STARTER_SEQUENCES)


def init_db(path='sqlite:///./melody.db'):
    engine = create_engine(path, connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    with Session(engine) as session:
        added = seed_catalog(session)
    logger.info("db_initialized", extra={"event": f"seeded={added}"})
    return engine


if __name__ == '__main__':
    init_db()
