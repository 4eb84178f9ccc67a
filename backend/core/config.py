# backend/core/config.py
import os
from typing import Literal
from dotenv import load_dotenv


def _bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """
    Setup environment variables.
        - PRESENCE_BACKEND where presence lives: "redis" or "memory"
        - QUEUE_BACKEND the persistence queue backend: "redis" or "memory"
        - BROADCAST_BACKEND room fan-out across instances: "redis" or "local"
        - QUEUE_* / WORKER_* retry, retention and throughput policy of the
          chat persistence pipeline

    Any attribute can be overridden with keyword arguments, which is how the
    tests build isolated applications.
    """

    # Load environment variables from the .env file
    load_dotenv()

    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    PRESENCE_BACKEND: Literal["redis", "memory"] = os.getenv("PRESENCE_BACKEND", "redis")
    QUEUE_BACKEND: Literal["redis", "memory"] = os.getenv("QUEUE_BACKEND", "redis")
    BROADCAST_BACKEND: Literal["redis", "local"] = os.getenv("BROADCAST_BACKEND", "local")

    # Persistence queue policy
    QUEUE_NAME: str = os.getenv("QUEUE_NAME", "chat.persist")
    QUEUE_ATTEMPTS: int = int(os.getenv("QUEUE_ATTEMPTS", "3"))
    QUEUE_BACKOFF_MS: int = int(os.getenv("QUEUE_BACKOFF_MS", "2000"))
    QUEUE_REMOVE_ON_COMPLETE: int = int(os.getenv("QUEUE_REMOVE_ON_COMPLETE", "100"))
    QUEUE_REMOVE_ON_FAIL: int = int(os.getenv("QUEUE_REMOVE_ON_FAIL", "50"))
    QUEUE_CONNECT_ATTEMPTS: int = int(os.getenv("QUEUE_CONNECT_ATTEMPTS", "5"))
    QUEUE_CONNECT_BACKOFF_MS: int = int(os.getenv("QUEUE_CONNECT_BACKOFF_MS", "50"))
    QUEUE_CONNECT_BACKOFF_MAX_MS: int = int(os.getenv("QUEUE_CONNECT_BACKOFF_MAX_MS", "2000"))
    QUEUE_ENQUEUE_TIMEOUT_S: float = float(os.getenv("QUEUE_ENQUEUE_TIMEOUT_S", "0.5"))
    # A reserved job whose consumer stops renewing it for this long is handed out again
    QUEUE_LEASE_MS: int = int(os.getenv("QUEUE_LEASE_MS", "30000"))

    # Chat persistence worker
    WORKER_ENABLED: bool = _bool(os.getenv("WORKER_ENABLED", "true"))
    WORKER_CONCURRENCY: int = int(os.getenv("WORKER_CONCURRENCY", "5"))
    WORKER_RATE_MAX: int = int(os.getenv("WORKER_RATE_MAX", "100"))
    WORKER_RATE_WINDOW_MS: int = int(os.getenv("WORKER_RATE_WINDOW_MS", "60000"))

    # Token verification (tokens are issued by the auth service)
    JWT_SECRET: str = os.getenv("JWT_SECRET", "")
    JWT_ALGORITHM: str = os.getenv("JWT_ALGORITHM", "HS256")

    # Optional file persistence of the directory collaborators
    ROOMS_FILE: str = os.getenv("ROOMS_FILE", "")
    USERS_FILE: str = os.getenv("USERS_FILE", "")
    CHAT_HISTORY_FILE: str = os.getenv("CHAT_HISTORY_FILE", "")

    HISTORY_PAGE_SIZE: int = int(os.getenv("HISTORY_PAGE_SIZE", "20"))
    OUTBOX_SIZE: int = int(os.getenv("OUTBOX_SIZE", "256"))
    CORS_ORIGINS: str = os.getenv("CORS_ORIGINS", "*")

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown setting: {key}")
            setattr(self, key, value)

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


settings = Settings()
