import logging
import threading
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config import Config
from src.db.main import async_session
from src.matchmaking.models.race import (
    Challenge,
    ChallengeDifficulty,
    Race,
    RaceParticipant,
    RaceStatus,
    TypingSession,
)
from src.matchmaking.queue import MatchmakingQueue
from src.matchmaking.schemas.match import (
    MatchedPlayer,
    MatchedRace,
    MatchmakingStatusMessage,
)
from src.matchmaking.schemas.queue import MatchResult, QueueEntry
from src.matchmaking.websocket import manager

logger = logging.getLogger(__name__)

# WPM assumed for players without any typing history
DEFAULT_WPM = 40

# Number of recent sessions averaged into a player's matchmaking WPM
RECENT_SESSION_COUNT = 10

_queue: Optional[MatchmakingQueue] = None
_queue_lock = threading.Lock()


def get_matchmaking_queue() -> MatchmakingQueue:
    """
    Return the process-wide matchmaking queue, creating it on first use.
    """
    global _queue
    with _queue_lock:
        if _queue is None:
            _queue = MatchmakingQueue(Config.matchmaking_config())
            logger.info(f"Matchmaking queue created with {_queue.config}")
        return _queue


def reset_matchmaking_queue() -> None:
    """Stop and drop the process-wide queue."""
    global _queue
    with _queue_lock:
        if _queue is not None:
            _queue.stop_periodic_matching()
            _queue.clear()
        _queue = None


async def get_player_average_wpm(
    db: AsyncSession, user_id: int, recent_count: int = RECENT_SESSION_COUNT
) -> int:
    """
    Average WPM over a player's most recent typing sessions.

    Args:
        db: Database session
        user_id: The player to look up
        recent_count: How many of the latest sessions to average

    Returns:
        The rounded average, or DEFAULT_WPM for players with no sessions
    """
    stmt = (
        select(TypingSession.wpm)
        .where(TypingSession.user_id == user_id)
        .order_by(TypingSession.completed_at.desc())
        .limit(recent_count)
    )
    result = await db.execute(stmt)
    wpms = result.scalars().all()

    if not wpms:
        logger.debug(f"No typing sessions for user {user_id}, using {DEFAULT_WPM} WPM")
        return DEFAULT_WPM

    return max(0, round(sum(wpms) / len(wpms)))


def difficulty_for_wpm(average_wpm: float) -> ChallengeDifficulty:
    if average_wpm < 30:
        return ChallengeDifficulty.BEGINNER
    if average_wpm < 60:
        return ChallengeDifficulty.INTERMEDIATE
    return ChallengeDifficulty.ADVANCED


async def pick_match_challenge(db: AsyncSession, average_wpm: float) -> Optional[int]:
    """
    Pick a random challenge suited to a group's average WPM.

    Falls back to any challenge when none has the matching difficulty.

    Returns:
        The challenge id, or None if there are no challenges at all
    """
    difficulty = difficulty_for_wpm(average_wpm)

    result = await db.execute(
        select(Challenge.id)
        .where(Challenge.difficulty == difficulty)
        .order_by(func.random())
        .limit(1)
    )
    challenge_id = result.scalars().first()
    if challenge_id is not None:
        logger.info(
            f"Selected {difficulty.value} challenge {challenge_id} for average WPM {average_wpm:.1f}"
        )
        return challenge_id

    logger.warning(f"No {difficulty.value} challenges found, falling back to any challenge")
    result = await db.execute(select(Challenge.id).order_by(func.random()).limit(1))
    challenge_id = result.scalars().first()
    if challenge_id is None:
        logger.error("No challenges found in the database")
    return challenge_id


async def create_matched_race(
    db: AsyncSession, players: Sequence[QueueEntry], challenge_id: int
) -> int:
    """
    Persist a waiting race for a matched group and return its id.
    """
    race = Race(
        challenge_id=challenge_id,
        status=RaceStatus.WAITING,
        max_players=len(players),
    )
    db.add(race)
    await db.flush()
    race_id = race.id

    db.add_all(
        [RaceParticipant(race_id=race_id, user_id=player.user_id) for player in players]
    )
    await db.commit()

    logger.info(
        f"Created race {race_id} on challenge {challenge_id} for players "
        f"{[p.user_id for p in players]}"
    )
    return race_id


def _requeue(queue: MatchmakingQueue, players: Sequence[QueueEntry]) -> None:
    for player in players:
        queue.add_player(player.user_id, player.user_name, player.average_wpm)


async def handle_match(
    db: AsyncSession,
    result: MatchResult,
    queue: Optional[MatchmakingQueue] = None,
) -> Optional[MatchedRace]:
    """
    Turn a queue match into a race.

    Players are put back in the queue when no challenge is available or race
    creation fails; in the latter case the error is re-raised.
    """
    if queue is None:
        queue = get_matchmaking_queue()

    challenge_id = await pick_match_challenge(db, result.average_wpm)
    if challenge_id is None:
        logger.warning(
            f"No challenge for matched players {[p.user_id for p in result.players]}, re-queueing"
        )
        _requeue(queue, result.players)
        return None

    try:
        race_id = await create_matched_race(db, result.players, challenge_id)
    except Exception as e:
        logger.error(f"Error creating matched race: {e}, re-queueing players")
        await db.rollback()
        _requeue(queue, result.players)
        raise

    return MatchedRace(
        race_id=race_id,
        challenge_id=challenge_id,
        players=[
            MatchedPlayer(
                user_id=p.user_id, user_name=p.user_name, average_wpm=p.average_wpm
            )
            for p in result.players
        ],
    )


def matched_message(matched: MatchedRace) -> dict:
    return MatchmakingStatusMessage(
        status="matched", race_id=matched.race_id, players=matched.players
    ).model_dump(mode="json", exclude_none=True)


async def notify_matched(matched: MatchedRace) -> None:
    await manager.broadcast(
        [p.user_id for p in matched.players], matched_message(matched)
    )


async def on_periodic_match(result: MatchResult) -> Optional[MatchedRace]:
    """
    Callback for the periodic matcher: create the race and tell the players.
    """
    async with async_session() as db:
        matched = await handle_match(db, result)

    if matched is not None:
        await notify_matched(matched)
    return matched
