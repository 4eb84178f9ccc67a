"""
Shared fixtures.

Every application built here runs on the in-memory presence store and
queue, so the suite needs no Redis.
"""

import asyncio
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from jose import jwt

from core.config import Settings
from main import create_app
from services.chat_history import ChatHistory
from services.connection_manager import ConnectionManager
from services.gateway import RoomGateway
from services.job_queue import InMemoryJobQueue, RetryPolicy
from services.presence_store import InMemoryPresenceStore
from services.redis_pub_sub import LocalRoomBroadcaster
from services.room_directory import RoomDirectory
from services.user_directory import UserDirectory

JWT_SECRET = "test-jwt-secret-1234567890123456"


def make_token(user_id: str, secret: str = JWT_SECRET) -> str:
    return jwt.encode({"userId": user_id}, secret, algorithm="HS256")


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {make_token(user.id)}"}


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll an (async or sync) predicate until it is truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeWebSocket:
    """Records frames the server sends."""

    def __init__(self):
        self.sent = []
        self.closed_with = None

    async def send_json(self, message):
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        self.closed_with = code

    def of_type(self, frame_type):
        return [m for m in self.sent if m["type"] == frame_type]


# ============================================================================
# Application fixtures
# ============================================================================

@pytest.fixture
def settings():
    return Settings(
        PRESENCE_BACKEND="memory",
        QUEUE_BACKEND="memory",
        BROADCAST_BACKEND="local",
        JWT_SECRET=JWT_SECRET,
        QUEUE_BACKOFF_MS=10,
        WORKER_ENABLED=True,
        ROOMS_FILE="",
        USERS_FILE="",
        CHAT_HISTORY_FILE="",
        CORS_ORIGINS="*",
    )


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


@pytest.fixture
def services(client):
    return client.app.state.services


@pytest.fixture
def people(services):
    return SimpleNamespace(
        alice=services.users.add_user("Alice", "alice@example.com", user_id="alice"),
        bob=services.users.add_user("Bob", "bob@example.com", user_id="bob"),
        carol=services.users.add_user("Carol", "carol@example.com", user_id="carol"),
        dave=services.users.add_user("Dave", "dave@example.com", user_id="dave"),
        erin=services.users.add_user("Erin", "erin@example.com", user_id="erin"),
    )


# ============================================================================
# Component fixtures (no HTTP)
# ============================================================================

@pytest.fixture
def stack():
    users = UserDirectory()
    rooms = RoomDirectory()
    history = ChatHistory()
    presence = InMemoryPresenceStore()
    connections = ConnectionManager(outbox_size=64)
    queue = InMemoryJobQueue(RetryPolicy(attempts=3, backoff_ms=10))
    gateway = RoomGateway(
        room_directory=rooms,
        presence_store=presence,
        chat_history=history,
        connections=connections,
        broadcaster=LocalRoomBroadcaster(connections),
        job_queue=queue,
    )
    return SimpleNamespace(
        users=users,
        rooms=rooms,
        history=history,
        presence=presence,
        connections=connections,
        queue=queue,
        gateway=gateway,
        alice=users.add_user("Alice", "alice@example.com", user_id="alice"),
        bob=users.add_user("Bob", "bob@example.com", user_id="bob"),
        carol=users.add_user("Carol", "carol@example.com", user_id="carol"),
    )
