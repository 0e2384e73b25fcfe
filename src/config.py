import logging
from logging.config import dictConfig
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from src.matchmaking.schemas.queue import MatchmakingConfig


class Settings(BaseSettings):
    # API SERVER
    API_SERVER_PORT: int = 8000
    API_SERVER_HOST: str = "0.0.0.0"

    # Main DB
    DATABASE_URL: str = "sqlite+aiosqlite:///./typerace.db"

    # Matchmaking
    MATCHMAKING_WPM_RANGE: float = 15
    MATCHMAKING_MIN_PLAYERS: int = 2
    MATCHMAKING_MAX_PLAYERS: int = 4
    MATCHMAKING_EXPAND_AFTER_MS: float = 10000
    MATCHMAKING_EXPAND_STEP: float = 10
    MATCHMAKING_MAX_WPM_RANGE: float = 50
    MATCHMAKING_INTERVAL_MS: float = 3000
    MATCHMAKING_PERIODIC: bool = True

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def matchmaking_config(self) -> MatchmakingConfig:
        return MatchmakingConfig(
            wpm_range=self.MATCHMAKING_WPM_RANGE,
            min_players=self.MATCHMAKING_MIN_PLAYERS,
            max_players=self.MATCHMAKING_MAX_PLAYERS,
            expand_after_ms=self.MATCHMAKING_EXPAND_AFTER_MS,
            expand_step=self.MATCHMAKING_EXPAND_STEP,
            max_wpm_range=self.MATCHMAKING_MAX_WPM_RANGE,
        )


Config = Settings()

# Ensure logs directory exists
log_dir = Path(Config.LOG_FILE).parent
log_dir.mkdir(parents=True, exist_ok=True)


def configure_logging():
    """Configure logging for the application."""
    log_config = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            },
            "detailed": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(module)s - %(funcName)s - %(lineno)d - %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "level": Config.LOG_LEVEL,
            },
            "file": {
                "class": "logging.handlers.RotatingFileHandler",
                "formatter": "detailed",
                "filename": Config.LOG_FILE,
                "maxBytes": 10485760,  # 10MB
                "backupCount": 5,
                "level": Config.LOG_LEVEL,
            },
        },
        "loggers": {
            "app": {
                "handlers": ["console", "file"],
                "level": Config.LOG_LEVEL,
                "propagate": False,
            },
            "src.matchmaking": {
                "handlers": ["console", "file"],
                "level": Config.LOG_LEVEL,
                "propagate": False,
            },
            "src.db": {
                "handlers": ["console", "file"],
                "level": Config.LOG_LEVEL,
                "propagate": False,
            },
        },
        "root": {
            "handlers": ["console", "file"],
            "level": Config.LOG_LEVEL,
        },
    }
    dictConfig(log_config)
    return logging.getLogger("app")


# Initialize logger
logger = configure_logging()
