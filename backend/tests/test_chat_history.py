"""
Tests for services/chat_history.py
"""

from datetime import datetime

import pytest

from models.models import ChatMessageJob, MessageType
from services.chat_history import ChatHistory


def job(content, second, user_id="alice", username="Alice", type=MessageType.TEXT, room_id="r1"):
    return ChatMessageJob(
        room_id=room_id,
        user_id=user_id,
        username=username,
        content=content,
        type=type,
        timestamp=f"2024-01-01T10:00:{second:02d}+00:00",
    )


@pytest.fixture
async def history():
    history = ChatHistory()
    for i in range(6):
        await history.append(job(f"m{i}", i))
    return history


async def test_since_keeps_messages_at_or_after_the_instant(history):
    page = await history.list_by_room(
        "r1", order="asc", since=datetime.fromisoformat("2024-01-01T10:00:03+00:00")
    )

    assert [m.content for m in page.messages] == ["m3", "m4", "m5"]
    assert page.total_count == 6


async def test_naive_since_is_read_as_utc(history):
    page = await history.list_by_room("r1", order="asc", since=datetime(2024, 1, 1, 10, 0, 4))

    assert [m.content for m in page.messages] == ["m4", "m5"]


async def test_prev_cursor_is_only_set_for_cursor_requests(history):
    first = await history.list_by_room("r1", limit=2)
    second = await history.list_by_room("r1", limit=2, cursor=first.next_cursor)

    assert first.prev_cursor is None
    assert second.prev_cursor == second.messages[0].id
    assert [m.content for m in second.messages] == ["m3", "m2"]
    assert second.total_count == 6


async def test_unknown_cursor_gives_empty_page(history):
    page = await history.list_by_room("r1", cursor="does-not-exist")

    assert page.messages == []
    assert page.prev_cursor is None
    assert page.has_more is False


async def test_late_retry_is_slotted_in_order():
    history = ChatHistory()
    await history.append(job("second", 2))
    await history.append(job("first", 1))

    page = await history.list_by_room("r1", order="asc")

    assert [m.content for m in page.messages] == ["first", "second"]


async def test_stats_counts_types_and_ranks_contributors():
    history = ChatHistory()
    await history.append(job("Alice joined the room", 0, user_id=None, username="System", type=MessageType.SYSTEM))
    for i in range(3):
        await history.append(job(f"b{i}", i + 1, user_id="bob", username="Bob"))
    await history.append(job("a", 5))
    await history.append(job(":)", 6, type=MessageType.EMOJI))
    await history.append(job("elsewhere", 7, room_id="r2"))

    stats = await history.stats("r1")

    assert stats.total_messages == 6
    assert [(t.type, t.count) for t in stats.messages_by_type] == [
        (MessageType.TEXT, 4),
        (MessageType.SYSTEM, 1),
        (MessageType.EMOJI, 1),
    ]
    assert [(c.user_id, c.message_count) for c in stats.top_contributors] == [("bob", 3), ("alice", 2)]


async def test_stats_keeps_top_ten_contributors():
    history = ChatHistory()
    for i in range(12):
        for n in range(i + 1):
            await history.append(job(f"u{i}-{n}", 0, user_id=f"user{i:02d}", username=f"User {i}"))

    stats = await history.stats("r1")

    assert len(stats.top_contributors) == 10
    assert stats.top_contributors[0].user_id == "user11"
    assert stats.top_contributors[-1].user_id == "user02"


async def test_stats_of_empty_room():
    stats = await ChatHistory().stats("nothing")

    assert stats.total_messages == 0
    assert stats.messages_by_type == []
    assert stats.top_contributors == []
