from __future__ import annotations

import pytest

from flippi_stack.status import CaptureState, CompositeStatus, SocketState, StatusStore


class StepClock:
    def __init__(self, *values):
        self.values = list(values)

    def __call__(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def test_merge_replaces_only_given_fields():
    store = StatusStore()

    snap = store.merge({"streamer": {"process_running": True}, "launcher": {"emulator_running": True}})

    assert snap.streamer.process_running is True
    assert snap.streamer.socket_state == SocketState.UNKNOWN
    assert snap.launcher.emulator_running is True
    assert snap.launcher.process_running is False
    assert store.get() is snap


def test_snapshots_are_immutable():
    store = StatusStore()
    before = store.get()

    store.merge({"stack": {"running": True, "current_event_name": "EventA"}})

    assert before.stack.running is False
    assert store.get().stack.current_event_name == "EventA"


def test_unknown_group_or_field_raises():
    store = StatusStore()
    with pytest.raises(KeyError):
        store.merge({"obs": {"process_running": True}})
    with pytest.raises(KeyError):
        store.merge({"streamer": {"gameCapture": "active"}})


def test_last_updated_at_never_goes_backwards():
    store = StatusStore(CompositeStatus(), clock=StepClock(100.0, 105.0, 103.0, 110.0))

    seen = []
    for _ in range(4):
        seen.append(store.merge({"streamer": {"recording": True}}).streamer.last_updated_at)

    assert seen == [100.0, 105.0, 105.0, 110.0]
    assert all(b >= a for a, b in zip(seen, seen[1:]))


def test_only_touched_groups_get_new_timestamps():
    store = StatusStore(CompositeStatus(), clock=lambda: 50.0)

    snap = store.merge({"clipper": {"process_running": True}})

    assert snap.clipper.last_updated_at == 50.0
    assert snap.streamer.last_updated_at == 0.0


def test_subscribers_notified_even_without_change():
    store = StatusStore()
    received = []
    store.subscribe(received.append)

    store.merge({"streamer": {"recording": False}})
    store.merge({"streamer": {"recording": False}})

    assert len(received) == 2
    assert received[-1] is store.get()


def test_unsubscribe_and_failing_subscriber():
    store = StatusStore()
    received = []

    def broken(_snapshot):
        raise RuntimeError("boom")

    store.subscribe(broken)
    unsubscribe = store.subscribe(received.append)

    store.merge({"stack": {"running": True}})
    unsubscribe()
    store.merge({"stack": {"running": False}})

    assert len(received) == 1


def test_to_dict_uses_enum_values():
    store = StatusStore()
    store.merge({"streamer": {"socket_state": SocketState.CONNECTED, "capture_state": CaptureState.ACTIVE}})

    data = store.get().to_dict()

    assert data["streamer"]["socket_state"] == "connected"
    assert data["streamer"]["capture_state"] == "active"
    assert data["clipper"]["obs_connected"] is None
    assert set(data) == {"streamer", "stack", "clipper", "launcher"}
