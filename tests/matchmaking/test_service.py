from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from src.matchmaking.models.race import (
    Challenge,
    ChallengeDifficulty,
    Race,
    RaceParticipant,
    RaceStatus,
    TypingSession,
)
from src.matchmaking.schemas.match import MatchedRace
from src.matchmaking.schemas.queue import MatchResult, QueueEntry
from src.matchmaking.service import (
    DEFAULT_WPM,
    create_matched_race,
    difficulty_for_wpm,
    get_matchmaking_queue,
    get_player_average_wpm,
    handle_match,
    on_periodic_match,
    pick_match_challenge,
    reset_matchmaking_queue,
)


def make_result(*players):
    return MatchResult(
        players=[
            QueueEntry(user_id=uid, user_name=name, average_wpm=wpm, joined_at=0)
            for uid, name, wpm in players
        ]
    )


async def add_challenge(db, difficulty):
    challenge = Challenge(content="the quick brown fox", difficulty=difficulty)
    db.add(challenge)
    await db.commit()
    await db.refresh(challenge)
    return challenge


# get_player_average_wpm
@pytest.mark.asyncio
async def test_average_wpm_defaults_for_new_player(test_db):
    assert await get_player_average_wpm(test_db, 1) == DEFAULT_WPM


@pytest.mark.asyncio
async def test_average_wpm_uses_recent_sessions(test_db):
    now = datetime.now()
    # Two old sessions that fall outside the recent window
    for days in (30, 31):
        test_db.add(
            TypingSession(user_id=1, wpm=200, completed_at=now - timedelta(days=days))
        )
    for minutes in range(10):
        test_db.add(
            TypingSession(
                user_id=1, wpm=50 + minutes, completed_at=now - timedelta(minutes=minutes)
            )
        )
    # Another user's session is ignored
    test_db.add(TypingSession(user_id=2, wpm=10, completed_at=now))
    await test_db.commit()

    # 50..59 averages to 54.5, rounded half to even
    assert await get_player_average_wpm(test_db, 1) == 54


@pytest.mark.asyncio
async def test_average_wpm_rounds(test_db):
    now = datetime.now()
    for wpm in (50, 51, 51):
        test_db.add(TypingSession(user_id=1, wpm=wpm, completed_at=now))
    await test_db.commit()

    assert await get_player_average_wpm(test_db, 1) == 51


# difficulty / challenge selection
@pytest.mark.parametrize(
    "wpm, difficulty",
    [
        (0, ChallengeDifficulty.BEGINNER),
        (29.9, ChallengeDifficulty.BEGINNER),
        (30, ChallengeDifficulty.INTERMEDIATE),
        (59, ChallengeDifficulty.INTERMEDIATE),
        (60, ChallengeDifficulty.ADVANCED),
        (140, ChallengeDifficulty.ADVANCED),
    ],
)
def test_difficulty_for_wpm(wpm, difficulty):
    assert difficulty_for_wpm(wpm) == difficulty


@pytest.mark.asyncio
async def test_pick_challenge_matching_difficulty(test_db):
    beginner = await add_challenge(test_db, ChallengeDifficulty.BEGINNER)
    await add_challenge(test_db, ChallengeDifficulty.ADVANCED)

    assert await pick_match_challenge(test_db, 20) == beginner.id


@pytest.mark.asyncio
async def test_pick_challenge_falls_back_to_any(test_db):
    advanced = await add_challenge(test_db, ChallengeDifficulty.ADVANCED)

    assert await pick_match_challenge(test_db, 20) == advanced.id


@pytest.mark.asyncio
async def test_pick_challenge_without_challenges(test_db):
    assert await pick_match_challenge(test_db, 50) is None


# create_matched_race
@pytest.mark.asyncio
async def test_create_matched_race(test_db):
    challenge = await add_challenge(test_db, ChallengeDifficulty.INTERMEDIATE)
    result = make_result((1, "Alice", 50), (2, "Bob", 55))

    race_id = await create_matched_race(test_db, result.players, challenge.id)

    race = (await test_db.execute(select(Race).where(Race.id == race_id))).scalars().one()
    assert race.challenge_id == challenge.id
    assert race.status == RaceStatus.WAITING
    assert race.max_players == 2

    participants = (
        await test_db.execute(
            select(RaceParticipant.user_id).where(RaceParticipant.race_id == race_id)
        )
    ).scalars().all()
    assert sorted(participants) == [1, 2]


@pytest.mark.asyncio
async def test_created_at_is_stamped_on_insert(test_db):
    before = datetime.now()
    challenge = await add_challenge(test_db, ChallengeDifficulty.BEGINNER)
    race_id = await create_matched_race(
        test_db, make_result((1, "Alice", 20), (2, "Bob", 25)).players, challenge.id
    )

    race = (await test_db.execute(select(Race).where(Race.id == race_id))).scalars().one()
    await test_db.refresh(race)
    assert challenge.created_at >= before
    assert race.created_at >= before


# handle_match
@pytest.mark.asyncio
async def test_handle_match_creates_race(test_db, queue):
    challenge = await add_challenge(test_db, ChallengeDifficulty.INTERMEDIATE)
    result = make_result((1, "Alice", 50), (2, "Bob", 55))

    matched = await handle_match(test_db, result, queue)

    assert isinstance(matched, MatchedRace)
    assert matched.challenge_id == challenge.id
    assert [p.user_id for p in matched.players] == [1, 2]
    # The queue result itself is not touched
    assert result.race_id is None
    assert queue.get_queue_size() == 0


@pytest.mark.asyncio
async def test_handle_match_requeues_without_challenge(test_db, queue):
    result = make_result((1, "Alice", 50), (2, "Bob", 55))

    assert await handle_match(test_db, result, queue) is None
    assert queue.is_in_queue(1)
    assert queue.is_in_queue(2)
    assert queue.get_entry(2).average_wpm == 55


@pytest.mark.asyncio
async def test_handle_match_requeues_when_race_creation_fails(test_db, queue):
    await add_challenge(test_db, ChallengeDifficulty.INTERMEDIATE)
    result = make_result((1, "Alice", 50), (2, "Bob", 55))

    with patch(
        "src.matchmaking.service.create_matched_race",
        new=AsyncMock(side_effect=SQLAlchemyError("insert failed")),
    ):
        with pytest.raises(SQLAlchemyError):
            await handle_match(test_db, result, queue)

    assert queue.get_queue_size() == 2


# on_periodic_match
@pytest.mark.asyncio
async def test_on_periodic_match_notifies_players(session_factory):
    async with session_factory() as db:
        await add_challenge(db, ChallengeDifficulty.ADVANCED)
    result = make_result((1, "Alice", 70), (2, "Bob", 75))

    with patch("src.matchmaking.service.async_session", session_factory), patch(
        "src.matchmaking.service.manager.broadcast", new=AsyncMock()
    ) as mock_broadcast:
        matched = await on_periodic_match(result)

    assert matched is not None
    user_ids, message = mock_broadcast.call_args.args
    assert user_ids == [1, 2]
    assert message["type"] == "matchmaking:status"
    assert message["status"] == "matched"
    assert message["race_id"] == matched.race_id
    assert [p["user_id"] for p in message["players"]] == [1, 2]


@pytest.mark.asyncio
async def test_on_periodic_match_skips_notification_without_race(session_factory):
    result = make_result((1, "Alice", 70), (2, "Bob", 75))

    with patch("src.matchmaking.service.async_session", session_factory), patch(
        "src.matchmaking.service.manager.broadcast", new=AsyncMock()
    ) as mock_broadcast:
        assert await on_periodic_match(result) is None

    mock_broadcast.assert_not_called()
    assert get_matchmaking_queue().get_queue_size() == 2


# global queue
def test_global_queue_is_shared_until_reset():
    queue = get_matchmaking_queue()
    assert get_matchmaking_queue() is queue

    reset_matchmaking_queue()
    assert get_matchmaking_queue() is not queue
