import json

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config import logger
from src.db.main import get_session, get_session_factory
from src.errors import BadRequestException, DatabaseException

from .queue import MatchmakingQueue
from .schemas.match import (
    JoinQueueRequest,
    MatchmakingStatusMessage,
    MatchmakingStatusResponse,
)
from .service import (
    get_matchmaking_queue,
    get_player_average_wpm,
    handle_match,
    notify_matched,
)
from .websocket import manager

# Create a module-specific logger
match_logger = logger.getChild("matchmaking")

router = APIRouter(prefix="/matchmaking", tags=["matchmaking"])


async def _join_queue(
    db: AsyncSession, queue: MatchmakingQueue, user_id: int, user_name: str
) -> MatchmakingStatusResponse:
    if queue.is_in_queue(user_id):
        match_logger.warning(f"User {user_id} is already in the matchmaking queue")
        raise BadRequestException(detail="Already in matchmaking queue")

    try:
        average_wpm = await get_player_average_wpm(db, user_id)
    except SQLAlchemyError as db_error:
        match_logger.error(f"Database error during WPM lookup: {str(db_error)}")
        raise DatabaseException(detail="Failed to look up player speed")

    entry = queue.add_player(user_id, user_name, average_wpm)
    match_logger.info(
        f"User {user_id} joined matchmaking with {entry.average_wpm} WPM "
        f"(queue size {queue.get_queue_size()})"
    )

    result = queue.try_match()
    if result is not None:
        try:
            matched = await handle_match(db, result, queue)
        except SQLAlchemyError as db_error:
            match_logger.error(f"Database error during race creation: {str(db_error)}")
            raise DatabaseException(detail="Failed to create matched race")

        if matched is not None:
            await notify_matched(matched)
            if any(p.user_id == user_id for p in matched.players):
                return MatchmakingStatusResponse(
                    status="matched",
                    race_id=matched.race_id,
                    players=matched.players,
                )

    return MatchmakingStatusResponse(
        status="queued",
        average_wpm=entry.average_wpm,
        position=queue.get_queue_size(),
    )


@router.post(
    "", response_model=MatchmakingStatusResponse, response_model_exclude_none=True
)
async def join_matchmaking(
    request_data: JoinQueueRequest,
    db: AsyncSession = Depends(get_session),
    queue: MatchmakingQueue = Depends(get_matchmaking_queue),
):
    """
    Add a user to the matchmaking queue and try to match immediately.
    Players who are not matched right away are picked up by the periodic
    matcher and notified over the matchmaking websocket.
    """
    match_logger.info(f"Matchmaking join request for user ID: {request_data.user_id}")
    return await _join_queue(db, queue, request_data.user_id, request_data.user_name)


@router.get(
    "", response_model=MatchmakingStatusResponse, response_model_exclude_none=True
)
async def get_matchmaking_status(
    user_id: int, queue: MatchmakingQueue = Depends(get_matchmaking_queue)
):
    entry = queue.get_entry(user_id)
    if entry is None:
        return MatchmakingStatusResponse(status="not_queued")

    return MatchmakingStatusResponse(
        status="queued",
        average_wpm=entry.average_wpm,
        waiting_since=entry.queued_at,
        queue_size=queue.get_queue_size(),
    )


@router.delete(
    "", response_model=MatchmakingStatusResponse, response_model_exclude_none=True
)
async def leave_matchmaking(
    user_id: int, queue: MatchmakingQueue = Depends(get_matchmaking_queue)
):
    if not queue.remove_player(user_id):
        match_logger.warning(f"Leave request for user {user_id} who is not queued")
        raise BadRequestException(detail="Not in matchmaking queue")

    match_logger.info(f"User {user_id} left the matchmaking queue")
    return MatchmakingStatusResponse(status="left")


@router.websocket("/ws/{user_id}")
async def matchmaking_websocket(
    websocket: WebSocket,
    user_id: int,
    queue: MatchmakingQueue = Depends(get_matchmaking_queue),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Matchmaking over a websocket. Clients send ``matchmaking:join`` (with
    ``user_name``) and ``matchmaking:leave``; the server pushes
    ``matchmaking:status`` messages. Closing the last socket of a user takes
    them out of the queue.
    """
    await manager.connect(websocket, user_id)
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await websocket.send_json({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(data, dict):
                await websocket.send_json(
                    {"type": "error", "message": "Message must be a JSON object"}
                )
                continue

            message_type = data.get("type")

            if message_type == "matchmaking:join":
                try:
                    async with session_factory() as db:
                        response = await _join_queue(
                            db, queue, user_id, data.get("user_name") or str(user_id)
                        )
                except (BadRequestException, DatabaseException) as e:
                    await websocket.send_json({"type": "error", "message": e.detail})
                    continue

                # Matched players already got the broadcast from notify_matched
                if response.status == "queued":
                    await websocket.send_json(
                        MatchmakingStatusMessage(
                            status="queued",
                            average_wpm=response.average_wpm,
                            queue_size=response.position,
                        ).model_dump(mode="json", exclude_none=True)
                    )

            elif message_type == "matchmaking:leave":
                queue.remove_player(user_id)
                await websocket.send_json(
                    MatchmakingStatusMessage(status="cancelled").model_dump(
                        mode="json", exclude_none=True
                    )
                )

            else:
                await websocket.send_json(
                    {"type": "error", "message": f"Unknown message type: {message_type}"}
                )
    except WebSocketDisconnect:
        match_logger.info(f"Matchmaking websocket closed for user {user_id}")
    finally:
        manager.disconnect(websocket, user_id)
        if not manager.is_connected(user_id) and queue.remove_player(user_id):
            match_logger.info(f"User {user_id} disconnected, removed from matchmaking")
