import pytest

from nukenote.acks import DELIVERED, FAILED, PENDING, DeliveryTracker
from nukenote.telemetry import RttWindow, TelemetryEvent, TelemetryLog, summarize


def test_rtt_window_keeps_last_samples():
    window = RttWindow(size=3)
    assert window.average() is None
    for sample in (10, 20, 30, 40):
        window.add(sample)

    assert window.samples == [20.0, 30.0, 40.0]
    assert window.average() == 30.0


def test_log_is_bounded():
    log = TelemetryLog(limit=2)
    for index in range(3):
        log(TelemetryEvent(kind="ping", detail=str(index)))

    assert [event.detail for event in log.entries()] == ["1", "2"]
    assert [event.detail for event in log.entries(limit=1)] == ["2"]


def test_summary_reports_latest_values():
    events = [
        TelemetryEvent(kind="status", status="online", timestamp="2024-01-01T00:00:00Z"),
        TelemetryEvent(kind="heartbeat", rtt_ms=10, timestamp="2024-01-01T00:00:30Z"),
        TelemetryEvent(kind="status", status="disconnected", timestamp="2024-01-01T00:01:00Z"),
        TelemetryEvent(kind="reconnect", attempts=1, delay=2.0, timestamp="2024-01-01T00:01:00Z"),
        TelemetryEvent(kind="reconnect", attempts=2, delay=5.0, timestamp="2024-01-01T00:01:02Z"),
        TelemetryEvent(kind="status", status="online", timestamp="2024-01-01T00:01:07Z"),
        TelemetryEvent(kind="heartbeat", rtt_ms=16, timestamp="2024-01-01T00:01:37Z"),
    ]

    assert summarize(events) == {
        "lastConnected": "2024-01-01T00:01:07Z",
        "lastDisconnected": "2024-01-01T00:01:00Z",
        "reconnectCount": 2,
        "lastPing": "2024-01-01T00:01:37Z",
        "avgRtt": 13,
    }


def test_empty_summary():
    assert TelemetryLog().summary() == {
        "lastConnected": None,
        "lastDisconnected": None,
        "reconnectCount": 0,
        "lastPing": None,
        "avgRtt": None,
    }


def test_event_to_dict_uses_wire_names():
    event = TelemetryEvent(kind="heartbeat", timestamp="t", rtt_ms=4.5)
    assert event.to_dict() == {"kind": "heartbeat", "timestamp": "t", "rttMs": 4.5}


def test_tracker_first_terminal_state_wins():
    tracker = DeliveryTracker()
    tracker.mark_sent("t1", "m1")
    assert tracker.state("t1", "m1") == PENDING
    assert tracker.pending() == ["m1"]

    assert tracker.record("t1", "m1", DELIVERED) is True
    assert tracker.record("t1", "m1", FAILED) is False
    assert tracker.state("t1", "m1") == DELIVERED
    assert tracker.pending("t1") == []

    tracker.mark_sent("t1", "m1")
    assert tracker.state("t1", "m1") == DELIVERED


def test_tracker_rejects_non_terminal_state():
    with pytest.raises(ValueError):
        DeliveryTracker().record("t1", "m1", PENDING)


def test_tracker_resend_reopens_a_settled_message():
    tracker = DeliveryTracker()
    tracker.record("t1", "m1", FAILED)

    tracker.resend("t1", "m1")

    assert tracker.state("t1", "m1") == PENDING
    assert tracker.record("t1", "m1", DELIVERED) is True
    assert tracker.state("t1", "m1") == DELIVERED


def test_tracker_keeps_only_recent_settled_states():
    tracker = DeliveryTracker(max_settled=2)
    for message_id in ("m1", "m2", "m3"):
        tracker.record("t1", message_id, DELIVERED)

    assert len(tracker) == 2
    assert tracker.state("t1", "m1") is None
    assert tracker.state("t1", "m3") == DELIVERED


def test_tracker_forget_thread():
    tracker = DeliveryTracker()
    tracker.record("t1", "m1", DELIVERED)
    tracker.mark_sent("t1", "m2")
    tracker.record("t2", "m1", FAILED)

    tracker.forget_thread("t1")

    assert tracker.state("t1", "m1") is None
    assert tracker.pending() == []
    assert tracker.state("t2", "m1") == FAILED
