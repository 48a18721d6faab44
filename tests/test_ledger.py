import threading
import time

import pytest

from rcsd.constants import E_CALL_TIMEOUT
from rcsd.ledger import CallLedger, EntryState
from rcsd.lifecycle import LifecycleController

from conftest import ManualTimers


def _ledger(**kw):
    timers = ManualTimers()
    fired: list[tuple] = []
    ledger = CallLedger(
        ttl_s=kw.pop("ttl_s", 30.0),
        on_expire=lambda key, entry_id: fired.append((key, entry_id)),
        timer_factory=timers,
    )
    return ledger, timers, fired


def test_open_arms_timer_with_ttl() -> None:
    ledger, timers, _ = _ledger(ttl_s=12.5)
    entry, superseded = ledger.open("c1", "audio", None)

    assert superseded == []
    assert entry.state is EntryState.OPEN_UNRESOLVED
    assert entry.broadcast
    assert timers.last().interval == 12.5
    assert timers.last().live
    assert "c1" in ledger


def test_zero_ttl_means_no_timer() -> None:
    ledger, timers, _ = _ledger(ttl_s=0)
    ledger.open("c1", "audio", "100")
    assert timers.created == []


def test_agent_entries_use_composite_key() -> None:
    ledger, _, _ = _ledger()
    entry, _ = ledger.open("a1", "video", "200", agent_call=True)
    assert entry.key == ("a1", "200")
    assert ledger.get(("a1", "200")) is entry
    assert ledger.get("a1") is None


def test_new_request_supersedes_prior_one() -> None:
    ledger, timers, _ = _ledger()
    first, _ = ledger.open("c1", "audio", "100")
    first_timer = timers.last()

    second, superseded = ledger.open("c1", "video", "200")

    assert superseded == [first]
    assert first.state is EntryState.CANCELLED
    assert first_timer.cancelled
    assert ledger.get("c1") is second
    assert len(ledger) == 1


def test_finish_stops_timer_and_releases() -> None:
    ledger, timers, fired = _ledger()
    entry, _ = ledger.open("c1", "audio", None)

    released = ledger.finish("c1", EntryState.ACCEPTED)

    assert released is entry
    assert entry.state is EntryState.ACCEPTED
    assert timers.live() == []
    assert len(ledger) == 0
    # A timer that was already cancelled can no longer fire.
    timers.last().fire()
    assert fired == []

    assert ledger.finish("c1", EntryState.CANCELLED) is None


def test_finish_refuses_open_state() -> None:
    ledger, _, _ = _ledger()
    ledger.open("c1", "audio", None)
    with pytest.raises(ValueError):
        ledger.finish("c1", EntryState.OPEN_RESOLVED)


def test_cancel_before_fire_leaves_no_live_timer() -> None:
    ledger, timers, _ = _ledger()
    ledger.open("c1", "audio", "100")
    ledger.open("a1", "audio", "200", agent_call=True)

    assert ledger.cancel("c1")
    assert ledger.cancel(("a1", "200"))
    assert not ledger.cancel("c1")
    assert timers.live() == []


def test_timer_reports_key_and_entry_id() -> None:
    ledger, timers, fired = _ledger()
    entry, _ = ledger.open("c1", "audio", None)

    timers.last().fire()

    assert fired == [("c1", entry.entry_id)]
    expired = ledger.expire("c1", entry.entry_id)
    assert expired is entry
    assert entry.state is EntryState.TIMED_OUT
    assert len(ledger) == 0


def test_late_timer_does_not_touch_newer_entry() -> None:
    ledger, _, _ = _ledger()
    old, _ = ledger.open("c1", "audio", None)
    new, _ = ledger.open("c1", "audio", None)

    assert ledger.expire("c1", old.entry_id) is None
    assert ledger.get("c1") is new
    assert new.is_open


def test_resolve_deferred_only_binds_unresolved_entries() -> None:
    ledger, _, _ = _ledger()
    waiting, _ = ledger.open("c1", "audio", "100")
    bound, _ = ledger.open("c2", "audio", "100")
    ledger.resolve("c2", "a0")
    own, _ = ledger.open("a9", "audio", "100", agent_call=True)

    resolved = ledger.resolve_deferred("100", "a9")

    assert resolved == [waiting]
    assert waiting.target == "a9"
    assert waiting.state is EntryState.OPEN_RESOLVED
    assert bound.target == "a0"
    assert own.target is None


def test_recipients_and_involvement() -> None:
    ledger, _, _ = _ledger()
    entry, _ = ledger.open("c1", "audio", None)
    entry.mark_notified("a1")
    entry.mark_notified("a2")
    entry.mark_notified("a1")
    entry.withdraw("a2")
    entry.withdraw("zz")

    assert entry.recipients() == ["a1"]
    assert ledger.entries_involving("a1") == [entry]
    assert ledger.entries_involving("a2") == []
    assert ledger.entries_involving("c1") == [entry]


def test_clear_all_stops_every_timer() -> None:
    ledger, timers, _ = _ledger()
    ledger.open("c1", "audio", None)
    ledger.open("c2", "audio", "100")

    assert ledger.clear_all() == 2
    assert timers.live() == []
    assert ledger.entries() == []


def test_thread_timer_expires_under_shared_lock() -> None:
    lock = threading.RLock()
    fired = threading.Event()
    delivered: list = []

    def deliver(outgoing) -> None:
        delivered.extend(outgoing)
        fired.set()

    ctl = LifecycleController(call_timeout_s=0.05, lock=lock, deliver=deliver)
    with lock:
        ctl.register_client("c", {}, [])
        ctl.request_call("c", "audio", "555", [])

    assert fired.wait(2.0)
    assert [(who, ev) for who, ev, _ in delivered] == [("c", E_CALL_TIMEOUT)]
    with lock:
        assert len(ctl.ledger) == 0


def test_cancel_while_timer_waits_for_lock() -> None:
    lock = threading.RLock()
    delivered: list = []
    ctl = LifecycleController(call_timeout_s=0.05, lock=lock, deliver=delivered.extend)

    with lock:
        ctl.register_client("c", {}, [])
        ctl.request_call("c", "audio", "555", [])
        timer = ctl.ledger.get("c").timer
        # Long enough for the timer thread to fire and block on the lock.
        time.sleep(0.3)
        assert ctl.cancel_call_request("c", [])

    timer.join(2.0)
    assert not timer.is_alive()
    assert delivered == []
    assert len(ctl.ledger) == 0
