"""
Tests for the cooldown gate and its dedup keys.
"""

import asyncio
import datetime

from config.loader import AlertSettings
from family_alerts.cooldown import CooldownGate
from family_alerts.errors import StoreError
from family_alerts.models import CandidateEvent, GateDecision, NotificationEvent, NotificationKind

from conftest import T0


def _record(log, kind, at, fence_id=None, subject_id="alice"):
    log.events.append(NotificationEvent(
        group_id="fam1", kind=kind, title="t", message="m", subject_id=subject_id,
        recipient_id="bob", occurred_at=at, related_geofence_id=fence_id,
    ))


def _entry(fence_id="home"):
    return CandidateEvent(subject_id="alice", kind=NotificationKind.GEOFENCE_ENTRY,
                          fence_id=fence_id, fence_name="Home")


def test_no_history_allows(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    assert asyncio.run(gate.check(_entry())) is GateDecision.ALLOWED


def test_recent_record_blocks_until_window_passes(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.GEOFENCE_ENTRY, clock(), "home")

    clock.advance(minutes=1)
    assert asyncio.run(gate.check(_entry())) is GateDecision.BLOCKED

    clock.advance(minutes=4)
    assert asyncio.run(gate.check(_entry())) is GateDecision.ALLOWED


def test_window_is_per_fence(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.GEOFENCE_ENTRY, clock(), "home")
    assert asyncio.run(gate.check(_entry("school"))) is GateDecision.ALLOWED


def test_entry_and_exit_are_separate(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.GEOFENCE_ENTRY, clock(), "home")
    exit_event = CandidateEvent(subject_id="alice", kind=NotificationKind.GEOFENCE_EXIT, fence_id="home")
    assert asyncio.run(gate.check(exit_event)) is GateDecision.ALLOWED


def test_low_battery_window(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.LOW_BATTERY, clock())
    candidate = CandidateEvent(subject_id="alice", kind=NotificationKind.LOW_BATTERY, battery_percent=15)

    clock.advance(minutes=14)
    assert asyncio.run(gate.check(candidate)) is GateDecision.BLOCKED
    clock.advance(minutes=1)
    assert asyncio.run(gate.check(candidate)) is GateDecision.ALLOWED


def test_sos_is_never_gated(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.SOS, clock())
    log.query_error = StoreError("unreachable")
    candidate = CandidateEvent(subject_id="alice", kind=NotificationKind.SOS)
    assert asyncio.run(gate.check(candidate)) is GateDecision.ALLOWED


def test_lookup_failure_fails_closed(log, settings, clock, store_fault):
    gate = CooldownGate(log, settings, clock)
    log.query_error = store_fault
    assert asyncio.run(gate.check(_entry())) is GateDecision.BLOCKED


def test_naive_timestamps_are_treated_as_utc(log, settings, clock):
    gate = CooldownGate(log, settings, clock)
    _record(log, NotificationKind.GEOFENCE_ENTRY, T0.replace(tzinfo=None), "home")
    clock.advance(minutes=2)
    assert asyncio.run(gate.check(_entry())) is GateDecision.BLOCKED


def test_dedup_key_buckets(log, settings):
    gate = CooldownGate(log, settings)
    at = datetime.datetime(2026, 3, 1, 12, 0, 30, tzinfo=datetime.timezone.utc)
    key = gate.dedup_key(_entry(), "bob", at)
    assert key.startswith("geofence_entry_alice_home_bob_")
    assert gate.dedup_key(_entry(), "bob", at + datetime.timedelta(seconds=60)) == key
    assert gate.dedup_key(_entry(), "bob", at + datetime.timedelta(seconds=300)) != key
    assert gate.dedup_key(_entry(), "carol", at) != key


def test_dedup_key_absent_without_cooldown_or_when_disabled(log):
    gate = CooldownGate(log, AlertSettings())
    sos = CandidateEvent(subject_id="alice", kind=NotificationKind.SOS)
    assert gate.dedup_key(sos, "bob", T0) is None

    relaxed = CooldownGate(log, AlertSettings(strict_dedup=False))
    assert relaxed.dedup_key(_entry(), "bob", T0) is None


def test_battery_dedup_key_has_no_fence(log, settings):
    gate = CooldownGate(log, settings)
    candidate = CandidateEvent(subject_id="alice", kind=NotificationKind.LOW_BATTERY, battery_percent=10)
    assert gate.dedup_key(candidate, "bob", T0).startswith("low_battery_alice_none_bob_")
