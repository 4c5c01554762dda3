from datetime import datetime, timezone

import pytest

from conftest import FakeClock
from realtime_chat.errors import InvalidTransitionError, NotificationDeliveryError
from realtime_chat.schemas.message import Message, Sent
from realtime_chat.schemas.notification import NotificationChannel, NotificationStatus
from realtime_chat.services.notification_bridge import Decision, NotificationBridge, in_quiet_hours, minutes_of_day


def confirmed(message_id="42", sender="alice", content="hello", message_type="text", conversation_id="c1"):
    return Message(
        idempotency_key=f"key-{message_id}",
        conversation_id=conversation_id,
        sender_id=sender,
        content=content,
        type=message_type,
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        state=Sent(server_id=message_id),
    )


def at(hour, minute=0):
    return datetime(2024, 5, 1, hour, minute, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "start, end, now, expected",
    [
        ("22:00", "08:00", at(23), True),
        ("22:00", "08:00", at(3), True),
        ("22:00", "08:00", at(12), False),
        ("22:00", "08:00", at(22), True),
        ("22:00", "08:00", at(8), True),
        ("22:00", "08:00", at(8, 1), False),
        ("22:00", "08:00", at(21, 59), False),
        ("09:00", "17:00", at(12), True),
        ("09:00", "17:00", at(18), False),
        ("10:00", "10:00", at(10), False),
        (None, "08:00", at(3), False),
        ("22:00", None, at(23), False),
    ],
)
def test_quiet_hours_window(start, end, now, expected):
    assert in_quiet_hours(start, end, now) is expected


@pytest.mark.parametrize("value", ["24:00", "7", "ab:cd", "12:60"])
def test_minutes_of_day_rejects_bad_values(value):
    with pytest.raises(ValueError):
        minutes_of_day(value)


@pytest.mark.asyncio
async def test_offline_recipient_gets_one_push(bridge, backend):
    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.PUSH
    record = outcome.record
    assert record.channel is NotificationChannel.PUSH
    assert record.status is NotificationStatus.DELIVERED
    assert record.payload.conversation_id == "c1"
    assert record.payload.message_id == "42"
    [(recipients, title, body, data)] = backend.push_calls
    assert recipients == ["bob"]
    assert body == "hello"
    assert data["message_id"] == "42"
    assert backend.saved_notifications[0]["id"] == record.id


@pytest.mark.asyncio
async def test_online_recipient_gets_local_alert(bridge, presence, alerts, backend, clock):
    presence.ingest("bob", True, clock())

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.LOCAL
    assert alerts.records == [outcome.record]
    assert backend.push_calls == []


@pytest.mark.asyncio
async def test_viewing_recipient_gets_nothing(bridge, presence, alerts, backend, clock):
    presence.ingest("bob", True, clock())
    bridge.viewing.set("bob", "c1")

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.VIEWING
    assert bridge.records("bob") == []
    assert alerts.records == []
    assert backend.push_calls == []
    assert backend.saved_notifications == []


@pytest.mark.asyncio
async def test_viewing_but_stale_presence_still_notifies(bridge, presence, clock):
    presence.ingest("bob", True, clock())
    bridge.viewing.set("bob", "c1")
    clock.advance(120)

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.PUSH


@pytest.mark.asyncio
async def test_quiet_hours_suppress_push_and_record(backend, presence, alerts):
    clock = FakeClock(at(23, 30))
    bridge = NotificationBridge(backend, presence, local_alert=alerts, now_func=clock)
    backend.preferences["bob"] = {"quiet_hours_start": "22:00", "quiet_hours_end": "08:00", "timezone": "UTC"}

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.QUIET_HOURS
    assert backend.push_calls == []
    assert bridge.records("bob") == []


@pytest.mark.asyncio
async def test_quiet_hours_use_recipient_timezone(backend, presence, alerts):
    # 12:30 UTC is 23:30 in Asia/Vladivostok (UTC+10, no DST)
    clock = FakeClock(at(13, 30))
    bridge = NotificationBridge(backend, presence, local_alert=alerts, now_func=clock)
    backend.preferences["bob"] = {
        "quiet_hours_start": "22:00",
        "quiet_hours_end": "08:00",
        "timezone": "Asia/Vladivostok",
    }

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.QUIET_HOURS


@pytest.mark.asyncio
async def test_unknown_timezone_falls_back_to_default(backend, presence, alerts):
    clock = FakeClock(at(23, 30))
    bridge = NotificationBridge(backend, presence, local_alert=alerts, default_timezone="UTC", now_func=clock)
    backend.preferences["bob"] = {"quiet_hours_start": "22:00", "quiet_hours_end": "08:00", "timezone": "Mars/Olympus"}

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.QUIET_HOURS


@pytest.mark.asyncio
async def test_same_message_twice_creates_one_record(bridge, backend):
    first = await bridge.evaluate_message(confirmed(), "bob")
    second = await bridge.evaluate_message(confirmed(), "bob")

    assert second.decision is Decision.DUPLICATE
    assert second.record is first.record
    assert len(bridge.records("bob")) == 1
    assert len(backend.push_calls) == 1


@pytest.mark.asyncio
async def test_suppressed_decision_is_remembered(bridge, presence, clock, backend):
    presence.ingest("bob", True, clock())
    bridge.viewing.set("bob", "c1")
    await bridge.evaluate_message(confirmed(), "bob")

    bridge.viewing.set("bob", None)
    again = await bridge.evaluate_message(confirmed(), "bob")

    assert again.decision is Decision.DUPLICATE
    assert bridge.records("bob") == []


@pytest.mark.asyncio
async def test_sender_and_deleted_messages_are_skipped(bridge):
    assert (await bridge.evaluate_message(confirmed(), "alice")).decision is Decision.SENDER
    deleted = confirmed(message_id="43").model_copy(update={"deleted_at": at(12, 1)})
    assert (await bridge.evaluate_message(deleted, "bob")).decision is Decision.DELETED
    assert bridge.records() == []


@pytest.mark.asyncio
async def test_message_notifications_disabled(bridge, backend):
    backend.preferences["bob"] = {"message_notifications": False}
    outcome = await bridge.evaluate_message(confirmed(), "bob")
    assert outcome.decision is Decision.PREFERENCE
    assert backend.push_calls == []


@pytest.mark.asyncio
async def test_push_disabled_only_blocks_push(bridge, backend, presence, clock, alerts):
    backend.preferences["bob"] = {"push_enabled": False}

    offline = await bridge.evaluate_message(confirmed("42"), "bob")
    presence.ingest("bob", True, clock())
    online = await bridge.evaluate_message(confirmed("43"), "bob")

    assert offline.decision is Decision.PREFERENCE
    assert online.decision is Decision.LOCAL
    assert len(alerts.records) == 1


@pytest.mark.asyncio
async def test_preferences_error_uses_defaults(bridge, backend):
    backend.preferences_error = ConnectionError("db down")
    outcome = await bridge.evaluate_message(confirmed(), "bob")
    assert outcome.decision is Decision.PUSH


@pytest.mark.asyncio
async def test_media_message_body(bridge, backend):
    await bridge.evaluate_message(confirmed(content="https://cdn/x.jpg", message_type="photo"), "bob")
    assert backend.push_calls[0][2] == "Sent a photo"


@pytest.mark.asyncio
async def test_push_failure_marks_record_failed_without_raising(bridge, backend, caplog):
    backend.push_error = NotificationDeliveryError("no devices")

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.record.status is NotificationStatus.FAILED
    assert outcome.record.error == "no devices"
    assert bridge.unread_count("bob") == 0
    assert "failed via push" in caplog.text


@pytest.mark.asyncio
async def test_missing_local_alert_handler_fails_record(backend, presence, clock):
    bridge = NotificationBridge(backend, presence, now_func=clock)
    presence.ingest("bob", True, clock())

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.record.status is NotificationStatus.FAILED


@pytest.mark.asyncio
async def test_history_write_failure_is_swallowed(bridge, backend):
    backend.save_error = ConnectionError("db down")
    outcome = await bridge.evaluate_message(confirmed(), "bob")
    assert outcome.record.status is NotificationStatus.DELIVERED


@pytest.mark.asyncio
async def test_badge_and_open_transitions(bridge):
    first = (await bridge.evaluate_message(confirmed("42"), "bob")).record
    await bridge.evaluate_message(confirmed("43"), "bob")
    await bridge.evaluate_message(confirmed("44", conversation_id="c2"), "bob")
    assert bridge.unread_count("bob") == 3

    bridge.mark_opened(first.id)
    assert first.status is NotificationStatus.OPENED
    assert first.opened_at is not None
    assert bridge.unread_count("bob") == 2

    with pytest.raises(InvalidTransitionError):
        bridge.mark_opened(first.id)
    with pytest.raises(InvalidTransitionError):
        bridge.mark_delivered(first.id)

    assert bridge.mark_conversation_opened("bob", "c1") == 1
    assert bridge.unread_count("bob") == 1
    assert bridge.mark_opened("missing") is None


@pytest.mark.asyncio
async def test_match_notification(bridge, backend):
    outcome = await bridge.notify_match("bob", "m1", "Alice")
    again = await bridge.notify_match("bob", "m1", "Alice")

    assert outcome.decision is Decision.PUSH
    assert outcome.record.body == "You matched with Alice"
    assert again.decision is Decision.DUPLICATE

    backend.preferences["carol"] = {"match_notifications": False}
    assert (await bridge.notify_match("carol", "m2")).decision is Decision.PREFERENCE


@pytest.mark.asyncio
async def test_malformed_preferences_fall_back_to_defaults(bridge, backend, caplog):
    backend.preferences["bob"] = {"push_enabled": "sometimes", "quiet_hours_start": 7}

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.PUSH
    assert len(backend.push_calls) == 1
    assert "Malformed notification preferences for bob" in caplog.text


@pytest.mark.asyncio
async def test_failed_evaluation_releases_the_slot(bridge, backend, presence, monkeypatch):
    def broken(_user_id):
        raise RuntimeError("presence cache corrupted")

    monkeypatch.setattr(presence, "is_online", broken)
    with pytest.raises(RuntimeError):
        await bridge.evaluate_message(confirmed(), "bob")
    monkeypatch.undo()

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.PUSH
    assert len(backend.push_calls) == 1


@pytest.mark.asyncio
async def test_two_app_instances_deliver_once(backend, presence, alerts, clock):
    first = NotificationBridge(backend, presence, local_alert=alerts, now_func=clock)
    second = NotificationBridge(backend, presence, local_alert=alerts, now_func=clock)

    outcomes = [
        await first.evaluate_message(confirmed(), "bob"),
        await second.evaluate_message(confirmed(), "bob"),
    ]

    assert [o.decision for o in outcomes] == [Decision.PUSH, Decision.DUPLICATE]
    assert len(backend.push_calls) == 1
    assert len(first.records("bob")) + len(second.records("bob")) == 1
    assert backend.claims == {("42", "bob")}


@pytest.mark.asyncio
async def test_claim_store_outage_still_delivers(bridge, backend, caplog):
    backend.claim_error = ConnectionError("redis down")

    outcome = await bridge.evaluate_message(confirmed(), "bob")

    assert outcome.decision is Decision.PUSH
    assert len(backend.push_calls) == 1
    assert "delivering anyway" in caplog.text


@pytest.mark.asyncio
async def test_suppressed_messages_do_not_take_the_claim(bridge, backend, presence, clock):
    presence.ingest("bob", True, clock())
    bridge.viewing.set("bob", "c1")

    await bridge.evaluate_message(confirmed(), "bob")

    assert backend.claims == set()
