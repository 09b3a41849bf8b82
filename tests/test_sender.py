"""
Tests for templating and fan-out in the notification dispatcher.
"""

import asyncio

from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import messaging

from family_alerts.cooldown import CooldownGate
from family_alerts.errors import StoreError, TransientStoreError
from family_alerts.models import (CandidateEvent, Coordinate, NotificationEvent, NotificationKind,
                                  PushOutcome)
from family_alerts.sender import (FcmPushSender, NotificationDispatcher, build_message, build_push_payload,
                                  collapse_tag)

from conftest import T0, make_subject


def _dispatcher(registry, log, push, settings, clock, push_timeout=10.0):
    return NotificationDispatcher(registry, log, push, CooldownGate(log, settings, clock), clock,
                                  push_timeout=push_timeout)


def _entry():
    return CandidateEvent(subject_id="alice", kind=NotificationKind.GEOFENCE_ENTRY, fence_id="home",
                          fence_name="Home", location=Coordinate(37.0005, -122.0))


def test_sos_message_with_location_and_battery():
    candidate = CandidateEvent(subject_id="alice", kind=NotificationKind.SOS,
                               location=Coordinate(37.123456, -122.5), battery_percent=42)
    title, message = build_message("Alice", candidate)
    assert title == "🆘 SOS: Alice"
    assert message == "Alice needs help near 37.1235, -122.5000! Battery: 42%."


def test_sos_message_without_context():
    title, message = build_message("Alice", CandidateEvent(subject_id="alice", kind=NotificationKind.SOS))
    assert message == "Alice needs help at their last known location!"


def test_geofence_and_battery_messages():
    assert build_message("Alice", _entry()) == ("Home", "Alice arrived at Home.")
    exit_event = CandidateEvent(subject_id="alice", kind=NotificationKind.GEOFENCE_EXIT, fence_id="home",
                                fence_name="Home")
    assert build_message("Alice", exit_event) == ("Home", "Alice left Home.")

    battery = CandidateEvent(subject_id="alice", kind=NotificationKind.LOW_BATTERY, battery_percent=15)
    assert build_message("", battery) == ("Low Battery: A family member",
                                          "A family member's phone battery is low (15%).")


def test_info_message():
    info = CandidateEvent(subject_id="alice", kind=NotificationKind.INFO, detail="Running late")
    assert build_message("Alice", info) == ("Update from Alice", "Running late")


def test_push_payload_data_is_all_strings():
    event = NotificationEvent(group_id="fam1", kind=NotificationKind.GEOFENCE_ENTRY, title="Home",
                              message="Alice arrived at Home.", subject_id="alice", recipient_id="bob",
                              occurred_at=T0, related_geofence_id="home",
                              related_location=Coordinate(37.0005, -122.0))
    payload = build_push_payload(event, collapse_tag(_entry()))
    assert payload["tag"] == "geofence_entry_alice_home"
    assert payload["data"]["relatedLocation"] == "37.0005,-122.0"
    assert all(isinstance(v, str) for v in payload["data"].values())


def test_dispatch_excludes_subject_and_other_families(registry, log, push, settings, clock):
    dispatcher = _dispatcher(registry, log, push, settings, clock)
    alice = registry.subjects["alice"]

    result = asyncio.run(dispatcher.dispatch(alice, _entry()))

    assert result.recipients == ["bob"]
    assert result.recorded == ["bob"]
    assert result.delivered == ["bob"]
    assert result.ok
    assert [address for address, _ in push.sent] == ["tok-bob"]
    assert log.events[0].recipient_id == "bob"
    assert log.events[0].related_geofence_id == "home"
    assert log.events[0].occurred_at == T0


def test_missing_token_still_records(registry, log, push, settings, clock):
    registry.subjects["bob"].push_token = None
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert result.recorded == ["bob"]
    assert result.delivered == []
    assert push.sent == []
    assert result.ok


def test_invalid_token_is_cleared(registry, log, push, settings, clock):
    push.outcomes["tok-bob"] = PushOutcome.INVALID_TOKEN
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert result.recorded == ["bob"]
    assert registry.cleared_tokens == [("bob", "tok-bob")]
    assert registry.subjects["bob"].push_token is None


def test_push_timeout_keeps_record(registry, log, push, settings, clock):
    push.delay = 1
    dispatcher = _dispatcher(registry, log, push, settings, clock, push_timeout=0.05)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert result.recorded == ["bob"]
    assert result.delivered == []
    assert result.ok


def test_write_failure_still_pushes_and_is_reported(registry, log, push, settings, clock):
    log.append_errors = [StoreError("permission denied")]
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert result.failed_writes == ["bob"]
    assert result.delivered == ["bob"]
    assert not result.ok


def test_transient_write_is_retried_once(registry, log, push, settings, clock):
    log.append_errors = [TransientStoreError("deadline exceeded")]
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert log.append_calls == 2
    assert result.recorded == ["bob"]
    assert result.ok


def test_duplicate_record_skips_push(registry, log, push, settings, clock):
    dispatcher = _dispatcher(registry, log, push, settings, clock)
    alice = registry.subjects["alice"]

    first = asyncio.run(dispatcher.dispatch(alice, _entry()))
    second = asyncio.run(dispatcher.dispatch(alice, _entry()))

    assert first.recorded == ["bob"]
    assert second.deduplicated == ["bob"]
    assert second.recorded == []
    assert len(push.sent) == 1
    assert len(log.events) == 1


def test_member_lookup_failure(registry, log, push, settings, clock, store_fault):
    registry.fail_members = store_fault
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert result.error == "firestore unavailable"
    assert not result.ok
    assert log.events == []


def test_lone_member_has_no_recipients(registry, log, push, settings, clock):
    dispatcher = _dispatcher(registry, log, push, settings, clock)
    carol = registry.subjects["carol"]
    candidate = CandidateEvent(subject_id="carol", kind=NotificationKind.SOS)

    result = asyncio.run(dispatcher.dispatch(carol, candidate))

    assert result.recipients == []
    assert log.events == []
    assert result.ok


def test_fan_out_to_whole_family(registry, log, push, settings, clock):
    registry.subjects["dan"] = make_subject("dan", "Dan", token="tok-dan")
    dispatcher = _dispatcher(registry, log, push, settings, clock)

    result = asyncio.run(dispatcher.dispatch(registry.subjects["alice"], _entry()))

    assert sorted(result.recorded) == ["bob", "dan"]
    assert sorted(a for a, _ in push.sent) == ["tok-bob", "tok-dan"]


def _payload():
    event = NotificationEvent(group_id="fam1", kind=NotificationKind.LOW_BATTERY, title="Low Battery: Alice",
                              message="Alice's phone battery is low (15%).", subject_id="alice",
                              recipient_id="bob", occurred_at=T0)
    return build_push_payload(event)


def _send_raising(monkeypatch, error):
    def fail(message):
        raise error

    monkeypatch.setattr(messaging, "send", fail)
    return asyncio.run(FcmPushSender().send("tok-bob", _payload()))


def test_fcm_bad_token_is_reported_invalid(monkeypatch):
    error = firebase_exceptions.InvalidArgumentError(
        "The registration token is not a valid FCM registration token")
    assert _send_raising(monkeypatch, error) is PushOutcome.INVALID_TOKEN


def test_fcm_payload_rejection_keeps_token(monkeypatch):
    error = firebase_exceptions.InvalidArgumentError("Request contains an invalid argument: data too large")
    assert _send_raising(monkeypatch, error) is PushOutcome.FAILED


def test_fcm_delivery(monkeypatch):
    monkeypatch.setattr(messaging, "send", lambda message: "projects/p/messages/1")
    assert asyncio.run(FcmPushSender().send("tok-bob", _payload())) is PushOutcome.DELIVERED
