from datetime import datetime, timezone
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field


class JoinQueueRequest(BaseModel):
    """Body of a join request; identity comes from the auth layer in front of us."""

    user_id: int
    user_name: str = Field(min_length=1)


class MatchedPlayer(BaseModel):
    user_id: Union[int, str]
    user_name: str
    average_wpm: float


class MatchedRace(BaseModel):
    """
    A race created for a matched group. Built by the host after race creation;
    the queue's MatchResult is left as is.
    """

    race_id: int
    challenge_id: int
    players: List[MatchedPlayer]


class MatchmakingStatusResponse(BaseModel):
    status: Literal["not_queued", "queued", "matched", "left"]
    average_wpm: Optional[float] = None
    position: Optional[int] = None
    queue_size: Optional[int] = None
    # Epoch milliseconds the player joined at
    waiting_since: Optional[float] = None
    race_id: Optional[int] = None
    players: Optional[List[MatchedPlayer]] = None


class MatchmakingStatusMessage(BaseModel):
    """Server push sent over the matchmaking websocket."""

    type: Literal["matchmaking:status"] = "matchmaking:status"
    status: Literal["queued", "matched", "cancelled"]
    average_wpm: Optional[float] = None
    queue_size: Optional[int] = None
    race_id: Optional[int] = None
    players: Optional[List[MatchedPlayer]] = None
    sent_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
