from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, DateTime, String
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Field, SQLModel


class ChallengeDifficulty(str, Enum):
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class RaceStatus(str, Enum):
    WAITING = "waiting"
    COUNTDOWN = "countdown"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class Challenge(SQLModel, table=True):
    """
    A practice text players type during a session or race.
    """

    __tablename__ = "challenges"

    id: Optional[int] = Field(default=None, primary_key=True)
    content: str = Field(sa_column=Column(String, nullable=False))
    difficulty: ChallengeDifficulty = Field(
        sa_column=Column(SQLEnum(ChallengeDifficulty), nullable=False, index=True)
    )
    created_at: datetime = Field(
        sa_column=Column(DateTime, default=datetime.now, nullable=False)
    )


class TypingSession(SQLModel, table=True):
    """
    One completed practice session. Recent sessions seed a player's matchmaking WPM.
    """

    __tablename__ = "typing_sessions"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(nullable=False, index=True)
    challenge_id: Optional[int] = Field(default=None, foreign_key="challenges.id")
    wpm: int = Field(nullable=False)
    accuracy: float = Field(default=100.0)
    completed_at: datetime = Field(
        sa_column=Column(DateTime, default=datetime.now, nullable=False)
    )


class Race(SQLModel, table=True):
    __tablename__ = "races"

    id: Optional[int] = Field(default=None, primary_key=True)
    challenge_id: int = Field(foreign_key="challenges.id", nullable=False)
    status: RaceStatus = Field(
        sa_column=Column(SQLEnum(RaceStatus), nullable=False, default=RaceStatus.WAITING)
    )
    max_players: int = Field(default=4)
    created_at: datetime = Field(
        sa_column=Column(DateTime, default=datetime.now, nullable=False)
    )


class RaceParticipant(SQLModel, table=True):
    __tablename__ = "race_participants"

    id: Optional[int] = Field(default=None, primary_key=True)
    race_id: int = Field(foreign_key="races.id", nullable=False, index=True)
    user_id: int = Field(nullable=False)
