import os
import time
import uuid

import uvicorn
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from starlette.middleware.base import BaseHTTPMiddleware

from src.config import Config, logger
from src.db.main import init_db
from src.errors import register_exception_handlers
from src.matchmaking.route import router as matchmaking_router
from src.matchmaking.service import get_matchmaking_queue, on_periodic_match


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        client_host = request.client.host if request.client else "unknown"
        logger.info(
            f"Request started: {request.method} {request.url.path} - "
            f"ID: {request_id} - Client: {client_host}"
        )
        start_time = time.time()
        try:
            response = await call_next(request)
            process_time = time.time() - start_time
            logger.info(
                f"Request completed: {request.method} {request.url.path} - "
                f"ID: {request_id} - Status: {response.status_code} - "
                f"Time: {process_time:.4f}s"
            )
            return response
        except Exception as e:
            process_time = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path} - "
                f"ID: {request_id} - Error: {e} - "
                f"Time: {process_time:.4f}s"
            )
            raise


@asynccontextmanager
async def life_span(app: FastAPI):
    logger.info("Server is starting...")
    if os.environ.get("TESTING") != "True":
        try:
            await init_db()
            logger.info("Database initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}")
            raise
    else:
        logger.info("Skipping database initialization for tests")

    queue = get_matchmaking_queue()
    queue.set_on_match(on_periodic_match)
    if Config.MATCHMAKING_PERIODIC:
        queue.start_periodic_matching(Config.MATCHMAKING_INTERVAL_MS)
    yield
    queue.stop_periodic_matching()
    logger.info("Server has been stopped")


version = "v1"

app = FastAPI(
    title="Typerace Matchmaking API",
    description="Skill-based matchmaking for multiplayer typing races",
    version=version,
    lifespan=life_span,
)

# Request logging
app.add_middleware(LoggingMiddleware)

# Error handlers
register_exception_handlers(app)

# Routes
app.include_router(matchmaking_router, prefix=f"/api/{version}", tags=["matchmaking"])

logger.info(f"Application startup complete - API version: {version}")


def run() -> None:
    uvicorn.run("src.main:app", host=Config.API_SERVER_HOST, port=Config.API_SERVER_PORT)


if __name__ == "__main__":
    run()
