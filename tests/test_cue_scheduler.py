"""Tests for scheduled SCTE-35 cue injection."""
import json
import time

import pytest

from cue_events import EventIdSequence
from cue_scheduler import CueScheduler, EMERGENCY_PROGRAM
from ome_client import OMEApiError, StreamTarget
from scte35_encoder import decode
from scte35_inserter import CueInjector


class FakeSender:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_cue(self, target, payload):
        if self.fail:
            raise OMEApiError("OME no disponible", 503)
        self.sent.append((target, payload))


TARGET = StreamTarget("default", "live", "stream1")


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def scheduler(sender):
    return CueScheduler(CueInjector(sender, EventIdSequence(500)), interval=0.01)


def test_schedule_reserves_next_event_id(scheduler):
    cue = scheduler.schedule("CUE-OUT", TARGET, time.time() + 60, duration=30)
    assert cue.status == "scheduled"
    assert cue.event_id == 500
    assert scheduler.injector.sequence.peek() == 501


def test_due_cues_execute_in_order_and_pair(scheduler, sender):
    now = time.time()
    cue_in = scheduler.schedule("CUE-IN", TARGET, now + 20)
    cue_out = scheduler.schedule("CUE-OUT", TARGET, now + 10, duration=10, pre_roll=2)

    assert scheduler.run_pending(now) == []
    executed = scheduler.run_pending(now + 30)
    assert [c.id for c in executed] == [cue_out.id, cue_in.id]

    out_event = decode(sender.sent[0][1])
    in_event = decode(sender.sent[1][1])
    assert out_event.event_id == in_event.event_id == 500
    assert out_event.splice_time_offset == 180000
    assert cue_out.status == cue_in.status == "executed"
    assert cue_in.event_id == 500
    assert scheduler.injector.event_log.get(cue_out.record_id).status == "sent"


def test_future_cues_are_not_executed(scheduler, sender):
    scheduler.schedule("CUE-OUT", TARGET, time.time() + 3600, duration=30)
    assert scheduler.run_pending() == []
    assert sender.sent == []


def test_cancel_and_delete(scheduler, sender):
    cue = scheduler.schedule("CUE-OUT", TARGET, time.time() - 1, duration=30)
    scheduler.cancel(cue.id)
    assert scheduler.run_pending() == []
    assert sender.sent == []
    with pytest.raises(ValueError):
        scheduler.cancel(cue.id)

    scheduler.delete(cue.id)
    assert scheduler.get(cue.id) is None
    with pytest.raises(KeyError):
        scheduler.delete(cue.id)
    with pytest.raises(KeyError):
        scheduler.cancel("scheduled_missing")


def test_cancel_program_only_touches_pending_cues(scheduler):
    now = time.time()
    first = scheduler.schedule("CUE-OUT", TARGET, now - 1, duration=30, program_id="morning_show")
    scheduler.run_pending(now)
    scheduler.schedule("CUE-IN", TARGET, now + 60, program_id="morning_show")
    scheduler.schedule("CUE-OUT", StreamTarget("default", "live", "other"), now + 60,
                       duration=30, program_id="afternoon_show")

    assert scheduler.cancel_program("morning_show") == 1
    assert first.status == "executed"
    assert len(scheduler.list_cues(status="cancelled")) == 1
    assert len(scheduler.list_cues(status="scheduled")) == 1


def test_emergency_cue_runs_on_next_pass(scheduler, sender):
    cue = scheduler.add_emergency("CUE-OUT", TARGET, duration=60)
    assert cue.program_id == EMERGENCY_PROGRAM
    scheduler.run_pending()
    assert cue.status == "executed"
    assert decode(sender.sent[0][1]).break_duration == 60


def test_failed_send_marks_cue_failed():
    scheduler = CueScheduler(CueInjector(FakeSender(fail=True)))
    cue = scheduler.schedule("CUE-OUT", TARGET, time.time() - 1, duration=30)
    scheduler.run_pending()
    assert cue.status == "failed"
    assert "OME no disponible" in cue.error


def test_cue_in_without_open_break_fails_at_execution(scheduler):
    cue = scheduler.schedule("CUE-IN", TARGET, time.time() - 1)
    scheduler.run_pending()
    assert cue.status == "failed"


@pytest.mark.parametrize("kwargs", [
    {"action": "CUE-OUT"},
    {"action": "CUE-OUT", "duration": 0},
    {"action": "CUE-OUT", "duration": 30, "pre_roll": 11},
    {"action": "CUE-OUT", "duration": 30, "event_id": -1},
    {"action": "SPLICE"},
])
def test_schedule_rejects_invalid_cues(scheduler, kwargs):
    with pytest.raises(ValueError):
        scheduler.schedule(target=TARGET, at=time.time(), **kwargs)
    assert scheduler.list_cues() == []


def test_background_thread_executes_due_cues(scheduler, sender):
    scheduler.schedule("CUE-OUT", TARGET, time.time(), duration=30)
    scheduler.start()
    try:
        deadline = time.time() + 5
        while not sender.sent and time.time() < deadline:
            time.sleep(0.01)
    finally:
        scheduler.stop()
    assert len(sender.sent) == 1
    assert scheduler.running is False


def test_persistence_round_trip(tmp_path, sender):
    path = str(tmp_path / "scheduled.json")
    scheduler = CueScheduler(CueInjector(sender), path=path)
    cue = scheduler.schedule("CUE-OUT", TARGET, time.time() + 60, duration=45, program_id="news")

    saved = json.loads((tmp_path / "scheduled.json").read_text(encoding="utf-8"))
    assert saved[0]["duration"] == 45

    restored = CueScheduler(CueInjector(sender), path=path)
    restored.load()
    assert restored.get(cue.id) == cue
    assert restored.get(cue.id).target == TARGET
