from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime


class Parent(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    created_at: Optional[datetime] = None


class ChildProfile(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    parent_id: str = Field(index=True, foreign_key="parent.id")
    name: str
    current_level_id: int = 1
    total_score: int = 0
    completed_tasks_in_level: int = 0
    last_played_at: Optional[datetime] = None


class Sequence(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    level_id: int = Field(index=True)
    sequence_beginning: str  # dash-joined notes, e.g. "C4-E4-G4"
    sequence_end: str  # hidden answer, never serialized to clients


class GameSession(SQLModel, table=True):
    id: Optional[str] = Field(default=None, primary_key=True)
    profile_id: str = Field(index=True, foreign_key="childprofile.id")
    started_at: datetime
    ended_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class TaskResult(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    profile_id: str = Field(index=True, foreign_key="childprofile.id")
    session_id: Optional[str] = Field(default=None, foreign_key="gamesession.id")
    sequence_id: str = Field(foreign_key="sequence.id")
    level_id: int
    attempts_used: int = 0
    score: int = 0
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None  # NULL while the task is open
