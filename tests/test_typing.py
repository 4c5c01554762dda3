import asyncio

import pytest

from realtime_chat.schemas.events import TypingFrame
from realtime_chat.services.typing import TypingTracker


class Recorder:

    def __init__(self):
        self.frames = []

    async def __call__(self, frame):
        self.frames.append(frame)


@pytest.mark.asyncio
async def test_rapid_start_typing_broadcasts_once():
    sent = Recorder()
    tracker = TypingTracker("alice", sent, window_seconds=5)

    results = [await tracker.start_typing("c1") for _ in range(10)]

    assert results.count(True) == 1
    assert len(sent.frames) == 1
    assert sent.frames[0].is_typing is True
    assert sent.frames[0].expires_at is not None
    await tracker.close()


@pytest.mark.asyncio
async def test_local_signal_clears_itself_without_stop():
    sent = Recorder()
    tracker = TypingTracker("alice", sent, window_seconds=0.03)

    await tracker.start_typing("c1")
    await asyncio.sleep(0.08)

    assert tracker.is_local_typing("c1") is False
    assert [f.is_typing for f in sent.frames] == [True, False]

    # a new burst after expiry broadcasts again
    assert await tracker.start_typing("c1") is True
    await tracker.close()


@pytest.mark.asyncio
async def test_stop_typing_sends_clear_only_after_a_start():
    sent = Recorder()
    tracker = TypingTracker("alice", sent, window_seconds=5)

    assert await tracker.stop_typing("c1") is False
    await tracker.start_typing("c1")
    assert await tracker.stop_typing("c1") is True
    assert await tracker.stop_typing("c1") is False

    assert [f.is_typing for f in sent.frames] == [True, False]
    await tracker.close()


@pytest.mark.asyncio
async def test_broadcast_failure_is_swallowed(caplog):
    async def broken(frame):
        raise ConnectionError("channel closed")

    tracker = TypingTracker("alice", broken, window_seconds=5)
    assert await tracker.start_typing("c1") is True
    assert "Typing broadcast failed" in caplog.text
    await tracker.close()


@pytest.mark.asyncio
async def test_remote_signal_expires_and_notifies_listener():
    tracker = TypingTracker("bob", Recorder(), window_seconds=0.03)
    changes = []
    tracker.add_listener(changes.append)

    tracker.observe(TypingFrame(conversation_id="c1", user_id="alice", is_typing=True))
    assert tracker.is_typing("c1") is True
    assert tracker.typing_users("c1") == ["alice"]

    await asyncio.sleep(0.08)

    assert tracker.is_typing("c1") is False
    assert changes == ["c1", "c1"]
    await tracker.close()


@pytest.mark.asyncio
async def test_repeated_remote_frames_extend_the_signal():
    tracker = TypingTracker("bob", Recorder(), window_seconds=0.05)
    frame = TypingFrame(conversation_id="c1", user_id="alice", is_typing=True)

    tracker.observe(frame)
    await asyncio.sleep(0.03)
    tracker.observe(frame)
    await asyncio.sleep(0.03)

    assert tracker.is_typing("c1") is True
    await tracker.close()


@pytest.mark.asyncio
async def test_remote_clear_and_own_frames():
    tracker = TypingTracker("bob", Recorder(), window_seconds=5)

    tracker.observe(TypingFrame(conversation_id="c1", user_id="bob", is_typing=True))
    assert tracker.is_typing("c1") is False

    tracker.observe(TypingFrame(conversation_id="c1", user_id="alice", is_typing=True))
    assert tracker.is_typing("c1", exclude="alice") is False
    tracker.observe(TypingFrame(conversation_id="c1", user_id="alice", is_typing=False))
    assert tracker.is_typing("c1") is False
    await tracker.close()


@pytest.mark.asyncio
async def test_close_cancels_timers_and_ignores_later_calls():
    sent = Recorder()
    tracker = TypingTracker("alice", sent, window_seconds=0.02)
    await tracker.start_typing("c1")
    await tracker.close()
    await asyncio.sleep(0.05)

    assert [f.is_typing for f in sent.frames] == [True]
    assert await tracker.start_typing("c1") is False
    tracker.observe(TypingFrame(conversation_id="c1", user_id="carol", is_typing=True))
    assert tracker.is_typing("c1") is False
