"""
Tests for services/gateway.py

Connections are driven with a FakeWebSocket that records every frame, so
the room protocol is tested without a server.
"""

import asyncio
import json
from unittest.mock import AsyncMock

from conftest import FakeWebSocket
from core.errors import QueueUnavailable
from models.models import ChatMessageJob, MessageType
from services.connection_manager import ConnectionState


def connect(stack, user):
    websocket = FakeWebSocket()
    connection = stack.connections.register(websocket)
    connection.authenticate(user)
    return websocket, connection


async def send(stack, connection, **frame):
    await stack.gateway.dispatch(connection, json.dumps(frame))


async def flush(*connections):
    for connection in connections:
        await connection.flush()


async def drain_queue(queue):
    jobs = []
    while True:
        queued = await queue.reserve(0.01)
        if queued is None:
            return jobs
        jobs.append(queued.job)


async def room_with(stack, host, *others, max_seats=8):
    room = await stack.rooms.create_room(host.id, "Study", max_seats)
    for user in others:
        await stack.rooms.join_room(user.id, room.code)
    return room


# ============================================================================
# joinRoom
# ============================================================================

async def test_join_sends_history_and_announces_to_others(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)

    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)
    await flush(alice, bob)

    assert bob.state == ConnectionState.ROOM_BOUND
    assert bob_ws.of_type("chatHistory")[0]["room_id"] == room.id
    assert [m["content"] for m in alice_ws.of_type("systemMessage")] == ["Bob joined the room"]
    assert bob_ws.of_type("systemMessage") == []

    users = alice_ws.of_type("roomUsers")[-1]["users"]
    assert sorted((u["user_id"], u["online"]) for u in users) == [("alice", True), ("bob", True)]

    jobs = await drain_queue(stack.queue)
    assert [(j.type, j.user_id, j.content) for j in jobs] == [
        (MessageType.SYSTEM, None, "Alice joined the room"),
        (MessageType.SYSTEM, None, "Bob joined the room"),
    ]


async def test_join_without_membership_is_rejected(stack):
    room = await room_with(stack, stack.alice)
    carol_ws, carol = connect(stack, stack.carol)

    await send(stack, carol, action="joinRoom", room_id=room.id)
    await flush(carol)

    assert [f["type"] for f in carol_ws.sent] == ["error"]
    assert carol.state == ConnectionState.AUTHENTICATED
    assert await stack.presence.list_presence(room.id) == []


async def test_join_unknown_room_reports_not_found(stack):
    ws, connection = connect(stack, stack.alice)

    await send(stack, connection, action="joinRoom", room_id="missing")
    await flush(connection)

    assert ws.of_type("error")[0]["message"] == "Room not found"
async def test_repeated_join_resyncs_without_announcing_again(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)
    await drain_queue(stack.queue)

    await send(stack, bob, action="joinRoom", room_id=room.id)
    await flush(alice, bob)

    assert [m["content"] for m in alice_ws.of_type("systemMessage")] == ["Bob joined the room"]
    assert len(bob_ws.of_type("chatHistory")) == 2
    assert len(bob_ws.of_type("roomUsers")) >= 2
    assert await drain_queue(stack.queue) == []
    assert stack.connections.connections_for_user(room.id, "bob") == {bob}


async def test_history_on_join_is_last_twenty_in_chronological_order(stack):
    room = await room_with(stack, stack.alice)
    for i in range(25):
        await stack.history.append(
            ChatMessageJob(
                room_id=room.id, user_id="alice", username="Alice", content=f"m{i}",
                timestamp=f"2024-01-01T10:00:{i:02d}+00:00",
            )
        )
    ws, connection = connect(stack, stack.alice)

    await send(stack, connection, action="joinRoom", room_id=room.id)
    await flush(connection)

    history = ws.of_type("chatHistory")[0]["messages"]
    assert [m["content"] for m in history] == [f"m{i}" for i in range(5, 25)]


# ============================================================================
# chatMessage
# ============================================================================

async def test_chat_is_broadcast_to_everyone_and_enqueued(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)
    await drain_queue(stack.queue)

    await send(stack, alice, action="chatMessage", room_id=room.id, content="hello")
    await flush(alice, bob)

    for ws in (alice_ws, bob_ws):
        frame = ws.of_type("chatMessage")[0]
        assert frame["content"] == "hello"
        assert frame["username"] == "Alice"
        assert frame["message_type"] == "TEXT"

    jobs = await drain_queue(stack.queue)
    assert [(j.user_id, j.content, j.type) for j in jobs] == [("alice", "hello", MessageType.TEXT)]
    assert jobs[0].timestamp == alice_ws.of_type("chatMessage")[0]["timestamp"]
    assert stack.gateway.messages_broadcast == 1


async def test_chat_is_delivered_when_queue_is_down(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)

    stack.gateway.job_queue = AsyncMock()
    stack.gateway.job_queue.enqueue.side_effect = QueueUnavailable()

    await send(stack, alice, action="chatMessage", room_id=room.id, content="still here")
    await flush(alice, bob)

    assert [f["content"] for f in bob_ws.of_type("chatMessage")] == ["still here"]
    assert alice_ws.of_type("error") == []
    assert stack.gateway.jobs_dropped == 1


async def test_chat_without_persistence_is_still_broadcast(stack):
    stack.gateway.job_queue = None
    room = await room_with(stack, stack.alice)
    ws, connection = connect(stack, stack.alice)
    await send(stack, connection, action="joinRoom", room_id=room.id)

    await send(stack, connection, action="chatMessage", room_id=room.id, content="ephemeral")
    await flush(connection)

    assert [f["content"] for f in ws.of_type("chatMessage")] == ["ephemeral"]
    assert ws.of_type("error") == []
    assert not stack.gateway.persistence_enabled


async def test_chat_before_join_is_rejected(stack):
    room = await room_with(stack, stack.alice)
    ws, connection = connect(stack, stack.alice)

    await send(stack, connection, action="chatMessage", room_id=room.id, content="too early")
    await flush(connection)

    assert ws.of_type("error")[0]["message"] == "Join the room before sending messages"
    assert await drain_queue(stack.queue) == []


async def test_chat_from_other_room_does_not_leak(stack):
    first = await room_with(stack, stack.alice)
    second = await room_with(stack, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=first.id)
    await send(stack, bob, action="joinRoom", room_id=second.id)

    await send(stack, alice, action="chatMessage", room_id=first.id, content="only first")
    await flush(alice, bob)

    assert bob_ws.of_type("chatMessage") == []


# ============================================================================
# malformed frames
# ============================================================================

async def test_malformed_frames_get_an_error_and_connection_stays_open(stack):
    room = await room_with(stack, stack.alice)
    ws, connection = connect(stack, stack.alice)

    await stack.gateway.dispatch(connection, "{not json")
    await send(stack, connection, action="dance")
    await send(stack, connection, action="chatMessage", room_id=room.id)
    await send(stack, connection, action="chatMessage", room_id=room.id, content="x", type="SYSTEM")
    await send(stack, connection, action="ping")
    await flush(connection)

    errors = [f["message"] for f in ws.of_type("error")]
    assert errors[0] == "Invalid JSON"
    assert all(message.startswith("Invalid event") for message in errors[1:])
    assert len(errors) == 4
    assert ws.sent[-1] == {"type": "pong"}
    assert not connection.closed


# ============================================================================
# toggleReady / leaveRoom / disconnect
# ============================================================================

async def test_toggle_ready_updates_presence(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    bob_ws, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)

    await send(stack, bob, action="toggleReady", room_id=room.id)
    await flush(alice, bob)

    assert bob_ws.of_type("readyState")[-1] == {"type": "readyState", "room_id": room.id, "ready": True}
    users = {u["user_id"]: u for u in alice_ws.of_type("roomUsers")[-1]["users"]}
    assert users["bob"]["ready"] is True
    assert users["bob"]["online"] is True
    assert (await stack.rooms.get_room(room.id)).find_member("bob").ready is True


async def test_disconnect_marks_offline_but_keeps_membership(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    _, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)

    await stack.gateway.disconnect(bob)
    await flush(alice)

    users = {u["user_id"]: u for u in alice_ws.of_type("roomUsers")[-1]["users"]}
    assert users["bob"]["online"] is False
    assert await stack.rooms.is_member(room.id, "bob")
    assert bob.closed
    assert stack.connections.connections_for_user(room.id, "bob") == set()


async def test_second_tab_keeps_user_online(stack):
    room = await room_with(stack, stack.alice)
    _, first = connect(stack, stack.alice)
    _, second = connect(stack, stack.alice)
    await send(stack, first, action="joinRoom", room_id=room.id)
    await send(stack, second, action="joinRoom", room_id=room.id)

    await stack.gateway.disconnect(first)

    [entry] = await stack.presence.list_presence(room.id)
    assert entry.online is True


async def test_leave_unbinds_every_tab_and_removes_presence(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    bob_ws, bob = connect(stack, stack.bob)
    tab1_ws, tab1 = connect(stack, stack.alice)
    tab2_ws, tab2 = connect(stack, stack.alice)
    for connection in (bob, tab1, tab2):
        await send(stack, connection, action="joinRoom", room_id=room.id)

    await send(stack, tab1, action="leaveRoom", room_id=room.id)
    await flush(bob, tab1, tab2)

    assert tab1_ws.of_type("roomLeft") == [{"type": "roomLeft", "room_id": room.id}]
    assert tab2_ws.of_type("roomLeft") == [{"type": "roomLeft", "room_id": room.id}]
    assert tab1.state == ConnectionState.AUTHENTICATED
    assert bob_ws.of_type("systemMessage")[-1]["content"] == "Alice left the room"
    assert [u["user_id"] for u in bob_ws.of_type("roomUsers")[-1]["users"]] == ["bob"]
    assert not await stack.rooms.is_member(room.id, "alice")
    assert (await stack.rooms.get_room(room.id)).host_id == "bob"

    # A late disconnect must not bring the entry back.
    await stack.gateway.disconnect(tab2)
    assert [e.user_id for e in await stack.presence.list_presence(room.id)] == ["bob"]


async def test_chat_after_leave_is_rejected(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    ws, connection = connect(stack, stack.alice)
    await send(stack, connection, action="joinRoom", room_id=room.id)
    await send(stack, connection, action="leaveRoom", room_id=room.id)

    await send(stack, connection, action="chatMessage", room_id=room.id, content="ghost")
    await flush(connection)

    assert ws.of_type("error")[-1]["message"] == "Join the room before sending messages"
async def test_leave_by_non_member_announces_nothing(stack):
    room = await room_with(stack, stack.alice)
    alice_ws, alice = connect(stack, stack.alice)
    carol_ws, carol = connect(stack, stack.carol)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await drain_queue(stack.queue)

    assert await stack.gateway.leave_room(stack.carol, room.id) is False
    await send(stack, carol, action="leaveRoom", room_id=room.id)
    await flush(alice, carol)

    assert alice_ws.of_type("systemMessage") == []
    assert carol_ws.of_type("roomLeft") == [{"type": "roomLeft", "room_id": room.id}]
    assert await drain_queue(stack.queue) == []
    assert (await stack.rooms.get_room(room.id)).host_id == "alice"


async def test_second_leave_is_a_no_op(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    alice_ws, alice = connect(stack, stack.alice)
    _, bob = connect(stack, stack.bob)
    await send(stack, alice, action="joinRoom", room_id=room.id)
    await send(stack, bob, action="joinRoom", room_id=room.id)
    await drain_queue(stack.queue)

    await send(stack, bob, action="leaveRoom", room_id=room.id)
    await send(stack, bob, action="leaveRoom", room_id=room.id)
    assert await stack.gateway.leave_room(stack.bob, room.id) is False
    await flush(alice, bob)

    assert [m["content"] for m in alice_ws.of_type("systemMessage")] == ["Bob left the room"]
    jobs = await drain_queue(stack.queue)
    assert [j.content for j in jobs] == ["Bob left the room"]


# ============================================================================
# slow consumers
# ============================================================================

class StuckWebSocket(FakeWebSocket):
    """Never finishes a send."""

    async def send_json(self, message):
        await asyncio.Event().wait()


async def test_slow_consumer_is_dropped_without_blocking_others(stack):
    room = await room_with(stack, stack.alice, stack.bob)
    fast_ws, fast = connect(stack, stack.alice)
    stuck_ws = StuckWebSocket()
    stuck = stack.connections.register(stuck_ws)
    stuck.authenticate(stack.bob)
    stack.connections.bind(fast, room.id)
    stack.connections.bind(stuck, room.id)

    for i in range(100):
        stack.connections.broadcast_to_room(room.id, {"type": "chatMessage", "content": str(i)})
        await asyncio.sleep(0)
    await flush(fast)

    assert stuck.closed
    assert stuck_ws.closed_with == 1008
    assert len(fast_ws.of_type("chatMessage")) == 100
    stuck.close()

class SlowCloseWebSocket(StuckWebSocket):
    """Stuck on send, and close only completes once released."""

    def __init__(self):
        super().__init__()
        self.release = asyncio.Event()

    async def close(self, code=1000, reason=""):
        await self.release.wait()
        await super().close(code, reason)


async def test_pending_close_of_slow_consumer_is_tracked(stack):
    room = await room_with(stack, stack.alice)
    ws = SlowCloseWebSocket()
    connection = stack.connections.register(ws)
    connection.authenticate(stack.alice)
    stack.connections.bind(connection, room.id)

    for i in range(stack.connections.outbox_size + 2):
        stack.connections.broadcast_to_room(room.id, {"type": "chatMessage", "content": str(i)})

    [task] = stack.connections._closing
    await asyncio.sleep(0.01)
    assert not task.done()

    ws.release.set()
    await task
    await asyncio.sleep(0)

    assert ws.closed_with == 1008
    assert stack.connections._closing == set()
    connection.close()
