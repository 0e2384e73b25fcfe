import time
from typing import List, Optional, Union

from pydantic import BaseModel, Field, model_validator


class QueueEntry(BaseModel):
    """
    Represents a player waiting in the matchmaking queue.
    """

    user_id: Union[int, str]
    user_name: str
    average_wpm: float = Field(ge=0)
    # Monotonic milliseconds, taken from the queue clock when the entry is added
    joined_at: float
    # Epoch milliseconds, for clients; matching never reads it
    queued_at: float = Field(default_factory=lambda: time.time() * 1000)


class MatchResult(BaseModel):
    """
    Represents a group of players pulled out of the queue by a successful match.
    The race id is left unset; the queue never assigns it.
    """

    players: List[QueueEntry]
    race_id: Optional[int] = None

    @property
    def average_wpm(self) -> float:
        return sum(p.average_wpm for p in self.players) / len(self.players)


class MatchmakingConfig(BaseModel):
    """Tuning knobs for the matchmaking queue."""

    # WPM spread allowed inside a group at zero wait time
    wpm_range: float = Field(default=15, ge=0)
    min_players: int = Field(default=2, ge=2)
    max_players: int = Field(default=4, ge=2)
    # Wait time after which a player's tolerance starts growing
    expand_after_ms: float = Field(default=10000, gt=0)
    # Added to a player's tolerance per full expand_after_ms waited
    expand_step: float = Field(default=10, ge=0)
    # Hard ceiling on any player's tolerance
    max_wpm_range: float = Field(default=50, ge=0)

    @model_validator(mode="after")
    def check_bounds(self) -> "MatchmakingConfig":
        if self.max_players < self.min_players:
            raise ValueError(
                f"max_players ({self.max_players}) must be >= min_players ({self.min_players})"
            )
        if self.max_wpm_range < self.wpm_range:
            raise ValueError(
                f"max_wpm_range ({self.max_wpm_range}) must be >= wpm_range ({self.wpm_range})"
            )
        return self
