from rcsd.constants import (
    E_AGENT_CALL_ACCEPTED,
    E_AGENT_CALL_CANCELLED,
    E_AGENT_CALL_REJECTED,
    E_AGENT_CALL_SENT,
    E_AGENT_DISCONNECTED,
    E_BUSY,
    E_CALL_ACCEPTED,
    E_CALL_ENDED,
    E_CALL_HANDLED,
    E_CALL_REJECTED,
    E_CALL_REQUEST_CANCELLED,
    E_CALL_REQUEST_QUEUED,
    E_CALL_REQUEST_SENT,
    E_CALL_TIMEOUT,
    E_CLIENT_DISCONNECTED,
    E_CURRENT_AGENTS,
    E_CURRENT_CLIENTS,
    E_ERROR,
    E_INCOMING_AGENT_CALL,
    E_INCOMING_CALL,
    E_NEW_AGENT,
    E_NEW_CLIENT,
    E_OFFLINE,
    E_STATUS_CHANGED,
    E_STATUS_REPLY,
)
from rcsd.presence import Role


def _only(h, identity, event):
    bodies = [body for ev, body in h.to(identity) if ev == event]
    assert len(bodies) == 1, h.to(identity)
    return bodies[0]


# Registration


def test_agent_registration_snapshot_and_announcement(harness) -> None:
    h = harness
    h.client("c1", name="Ann")
    h.agent("a1", "100", "Desk")
    h.take()

    h.agent("a2", "200", "Lab")

    assert _only(h, "a2", E_CURRENT_CLIENTS) == {
        "clients": [{"socketId": "c1", "userData": {"name": "Ann"}}]
    }
    assert _only(h, "a2", E_CURRENT_AGENTS) == {
        "agents": [
            {"socketId": "a1", "address": "100", "name": "Desk", "inCall": False}
        ]
    }
    assert _only(h, "a1", E_NEW_AGENT) == {
        "socketId": "a2",
        "address": "200",
        "name": "Lab",
    }
    assert h.to("c1") == []


def test_client_registration_is_announced_to_agents(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.take()

    h.client("c1", name="Ann")

    assert _only(h, "a1", E_NEW_CLIENT) == {
        "socketId": "c1",
        "userData": {"name": "Ann"},
    }


def test_duplicate_registration_reports_error(harness) -> None:
    h = harness
    h.client("c1")
    h.take()

    h.agent("c1", "100")

    body = _only(h, "c1", E_ERROR)
    assert body["code"] == "duplicate-registration"
    assert h.ctl.registry.role_of("c1") is Role.CLIENT


# Scenarios


def test_broadcast_request_reaches_registered_agent(harness) -> None:
    h = harness
    h.agent("a", "555")
    h.client("c")
    h.take()

    h.ctl.request_call("c", "audio", None, h.out)

    incoming = _only(h, "a", E_INCOMING_CALL)
    assert incoming["socketId"] == "c"
    assert incoming["callType"] == "audio"
    assert "targetSpecific" not in incoming
    assert _only(h, "c", E_CALL_REQUEST_SENT)["notified"] == 1


def test_queued_request_is_delivered_when_agent_registers(harness) -> None:
    h = harness
    h.client("c")
    h.take()

    h.ctl.request_call("c", "video", "555", h.out)

    assert _only(h, "c", E_CALL_REQUEST_QUEUED) == {
        "callType": "video",
        "targetAddress": "555",
        "isAgentCall": False,
        "timeout": 30.0,
    }
    h.take()

    h.agent("a", "555")

    incoming = _only(h, "a", E_INCOMING_CALL)
    assert incoming["targetSpecific"] is True
    assert incoming["callType"] == "video"
    assert h.ctl.ledger.get("c").target == "a"
    sent = _only(h, "c", E_CALL_REQUEST_SENT)
    assert sent["deferred"] is True
    assert sent["targetAgentId"] == "a"


def test_shared_address_routes_to_earliest_agent(harness) -> None:
    h = harness
    h.agent("a", "555")
    h.agent("b", "555")
    h.client("c")
    h.take()

    h.ctl.request_call("c", "audio", "555", h.out)

    assert _only(h, "a", E_INCOMING_CALL)["targetSpecific"] is True
    assert h.to("b") == []


def test_request_for_busy_agent_gets_busy(harness) -> None:
    h = harness
    h.agent("a", "555", "Desk")
    h.client("c")
    h.client("d")
    h.ctl.request_call("c", "audio", None, h.out)
    assert h.ctl.accept_call("a", "c", "audio", h.out)
    assert h.ctl.registry.find_agent("a").in_call
    h.take()

    h.ctl.request_call("d", "audio", "555", h.out)

    assert _only(h, "d", E_BUSY) == {
        "targetAgentId": "a",
        "agentName": "Desk",
        "address": "555",
    }
    assert h.ctl.ledger.get("d") is None
    assert h.to("a") == []


def test_unanswered_broadcast_times_out(make_harness) -> None:
    h = make_harness(call_timeout_s=30.0)
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.take()

    h.ctl.request_call("c", "audio", None, h.out)
    timer = h.timers.last()
    assert timer.interval == 30.0
    h.take()

    timer.fire()

    timeout = _only(h, "c", E_CALL_TIMEOUT)
    assert timeout["code"] == "timeout"
    assert timeout["isAgentCall"] is False
    for agent in ("a1", "a2"):
        assert _only(h, agent, E_CALL_REQUEST_CANCELLED)["reason"] == "timeout"
    h.take()

    assert h.ctl.cancel_call_request("c", h.out) is False
    assert h.take() == []


def test_agent_disconnect_mid_call(harness) -> None:
    h = harness
    h.agent("a", "555")
    h.agent("b", "777")
    h.client("c")
    h.ctl.request_call("c", "audio", "555", h.out)
    h.ctl.accept_call("a", "c", "audio", h.out)
    h.take()

    role = h.ctl.disconnect("a", h.out)

    assert role is Role.AGENT
    ended = _only(h, "c", E_CALL_ENDED)
    assert ended["reason"] == "disconnect"
    assert ended["source"] == "a"
    assert h.ctl.registry.role_of("a") is Role.UNASSIGNED
    assert h.ctl.ledger.entries_involving("a") == []
    assert h.ctl.peer_of("c") is None
    assert _only(h, "b", E_AGENT_DISCONNECTED)["socketId"] == "a"
    assert h.timers.live() == []


# Properties


def test_cancel_without_entry_is_silent(harness) -> None:
    h = harness
    h.client("c")
    h.take()

    assert h.ctl.cancel_call_request("c", h.out) is False
    assert h.ctl.cancel_call_request("stranger", h.out) is False
    assert h.take() == []


def test_open_then_cancel_leaves_no_timer(harness) -> None:
    h = harness
    h.agent("a", "555")
    h.client("c")
    h.take()

    h.ctl.request_call("c", "audio", "555", h.out)
    assert h.ctl.cancel_call_request("c", h.out) is True

    assert h.timers.live() == []
    assert len(h.ctl.ledger) == 0
    assert _only(h, "a", E_CALL_REQUEST_CANCELLED)["reason"] == "user-cancelled"
    h.take()

    # Even a timer that slipped past cancel finds nothing to expire.
    h.timers.last().callback()
    assert h.take() == []


def test_second_request_supersedes_first(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.take()

    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.request_call("c", "audio", "200", h.out)

    assert len(h.ctl.ledger.entries_by_requester("c")) == 1
    assert h.ctl.ledger.get("c").target == "a2"
    assert _only(h, "a1", E_CALL_REQUEST_CANCELLED)["reason"] == "superseded"
    assert len(h.timers.live()) == 1


def test_busy_agent_is_not_offered_broadcasts(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c1")
    h.client("c2")
    h.ctl.request_call("c1", "audio", "100", h.out)
    h.ctl.accept_call("a1", "c1", "audio", h.out)
    h.take()

    h.ctl.request_call("c2", "audio", None, h.out)

    assert E_INCOMING_CALL not in h.events_for("a1")
    assert _only(h, "a2", E_INCOMING_CALL)["socketId"] == "c2"


# Accept / reject


def test_first_accept_wins_and_others_are_told(harness) -> None:
    h = harness
    h.agent("a1", "100", "One")
    h.agent("a2", "200", "Two")
    h.client("c")
    h.ctl.request_call("c", "audio", None, h.out)
    h.take()

    assert h.ctl.accept_call("a1", "c", "audio", h.out) is True
    assert h.ctl.accept_call("a2", "c", "audio", h.out) is False

    assert _only(h, "c", E_CALL_ACCEPTED) == {
        "agentId": "a1",
        "agentAddress": "100",
        "agentName": "One",
        "callType": "audio",
    }
    handled = _only(h, "a2", E_CALL_HANDLED)
    assert handled["clientId"] == "c"
    assert handled["handledBy"]["socketId"] == "a1"
    assert _only(h, "a2", E_STATUS_CHANGED) == {
        "agentId": "a1",
        "address": "100",
        "inCall": True,
    }
    assert h.ctl.peer_of("c") == "a1"
    assert h.timers.live() == []


def test_client_cannot_accept(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.client("c1")
    h.client("c2")
    h.ctl.request_call("c1", "audio", None, h.out)
    h.take()

    assert h.ctl.accept_call("c2", "c1", "audio", h.out) is False
    assert h.take() == []
    assert h.ctl.ledger.get("c1").is_open


def test_only_resolved_target_may_accept(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.take()

    assert h.ctl.accept_call("a2", "c", "audio", h.out) is False
    assert h.ctl.ledger.get("c").target == "a1"


def test_broadcast_reject_only_withdraws_agent(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", None, h.out)
    h.take()

    assert h.ctl.reject_call("a1", "c", h.out) is True

    entry = h.ctl.ledger.get("c")
    assert entry.is_open
    assert entry.recipients() == ["a2"]
    assert h.take() == []


def test_broadcast_accept_requires_an_offer(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", None, h.out)
    h.agent("late", "300")
    h.ctl.reject_call("a1", "c", h.out)
    h.take()

    assert h.ctl.accept_call("a1", "c", "audio", h.out) is False
    assert h.ctl.accept_call("late", "c", "audio", h.out) is False
    assert h.take() == []
    assert h.ctl.ledger.get("c").is_open

    assert h.ctl.accept_call("a2", "c", "audio", h.out) is True


def test_queued_request_cannot_be_taken_by_another_address(harness) -> None:
    h = harness
    h.agent("b", "777")
    h.client("c")
    h.ctl.request_call("c", "audio", "555", h.out)
    h.take()

    assert h.ctl.accept_call("b", "c", "audio", h.out) is False
    assert not h.ctl.registry.find_agent("b").in_call
    assert h.ctl.ledger.get("c").is_open

    h.agent("a", "555")
    assert h.ctl.accept_call("a", "c", "audio", h.out) is True


def test_new_call_releases_previous_agent(harness) -> None:
    h = harness
    h.agent("a", "555")
    h.agent("b", "777")
    h.client("c")
    h.ctl.request_call("c", "audio", "555", h.out)
    h.ctl.accept_call("a", "c", "audio", h.out)
    h.ctl.request_call("c", "audio", "777", h.out)
    h.take()

    assert h.ctl.accept_call("b", "c", "audio", h.out) is True

    ended = _only(h, "a", E_CALL_ENDED)
    assert ended["source"] == "c"
    assert ended["reason"] == "superseded"
    assert not h.ctl.registry.find_agent("a").in_call
    assert h.ctl.peer_of("a") is None
    assert h.ctl.peer_of("c") == "b"
    assert h.ctl.get_stats()["active_calls"] == 1

    assert h.ctl.end_call("c", "b", None, h.out) is True
    assert not h.ctl.registry.find_agent("b").in_call


def test_direct_reject_releases_entry(harness) -> None:
    h = harness
    h.agent("a", "100", "Desk")
    h.client("c")
    h.ctl.request_call("c", "video", "100", h.out)
    h.take()

    assert h.ctl.reject_call("a", "c", h.out) is True

    assert _only(h, "c", E_CALL_REJECTED) == {
        "agentId": "a",
        "agentName": "Desk",
        "callType": "video",
    }
    assert h.ctl.ledger.get("c") is None
    assert h.timers.live() == []


# Agent to agent


def test_agent_to_agent_call_flow(harness) -> None:
    h = harness
    h.agent("a1", "100", "One")
    h.agent("a2", "200", "Two")
    h.agent("a3", "300", "Three")
    h.take()

    h.ctl.request_agent_call("a1", "video", "200", h.out)

    incoming = _only(h, "a2", E_INCOMING_AGENT_CALL)
    assert incoming == {
        "socketId": "a1",
        "agentData": {"address": "100", "name": "One"},
        "callType": "video",
    }
    assert _only(h, "a1", E_AGENT_CALL_SENT)["targetAgentId"] == "a2"
    assert h.ctl.ledger.get(("a1", "200")) is not None
    h.take()

    assert h.ctl.accept_agent_call("a2", "a1", "video", h.out) is True

    assert _only(h, "a1", E_AGENT_CALL_ACCEPTED) == {
        "agentId": "a2",
        "agentName": "Two",
        "address": "200",
        "callType": "video",
    }
    assert h.ctl.registry.find_agent("a1").in_call
    assert h.ctl.registry.find_agent("a2").in_call
    assert len(h.ctl.ledger) == 0
    h.take()

    assert h.ctl.end_call("a1", "a2", "hangup", h.out) is True

    ended = _only(h, "a2", E_CALL_ENDED)
    assert ended["isAgentCall"] is True
    assert ended["callType"] == "agent-agent"
    assert ended["reason"] == "hangup"
    assert not h.ctl.registry.find_agent("a1").in_call
    assert not h.ctl.registry.find_agent("a2").in_call
    status = [b for ev, b in h.to("a3") if ev == E_STATUS_CHANGED]
    assert {(b["agentId"], b["inCall"]) for b in status} == {
        ("a1", False),
        ("a2", False),
    }


def test_busy_agent_cannot_place_agent_call(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.accept_call("a1", "c", "audio", h.out)
    h.take()

    assert h.ctl.request_agent_call("a1", "audio", "200", h.out) is None
    assert _only(h, "a1", E_ERROR)["code"] == "already-in-call"
    assert h.to("a2") == []


def test_agent_call_requires_address(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.take()

    h.ctl.request_agent_call("a1", "audio", None, h.out)

    assert _only(h, "a1", E_ERROR)["code"] == "invalid-request"


def test_agent_call_reject_and_cancel(harness) -> None:
    h = harness
    h.agent("a1", "100", "One")
    h.agent("a2", "200", "Two")
    h.ctl.request_agent_call("a1", "audio", "200", h.out)
    h.take()

    assert h.ctl.reject_agent_call("a2", "a1", h.out) is True
    assert _only(h, "a1", E_AGENT_CALL_REJECTED) == {"agentId": "a2", "agentName": "Two"}
    assert len(h.ctl.ledger) == 0
    h.take()

    h.ctl.request_agent_call("a1", "audio", "200", h.out)
    h.take()

    assert h.ctl.cancel_agent_call("a1", "200", h.out) is True
    cancelled = _only(h, "a2", E_AGENT_CALL_CANCELLED)
    assert cancelled["agentId"] == "a1"
    assert cancelled["reason"] == "user-cancelled"
    assert h.timers.live() == []
    assert h.ctl.cancel_agent_call("a1", "200", h.out) is False


def test_becoming_busy_cancels_own_outgoing_request(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.client("c")
    h.ctl.request_agent_call("a1", "audio", "999", h.out)
    assert h.ctl.ledger.get(("a1", "999")) is not None

    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.accept_call("a1", "c", "audio", h.out)

    assert h.ctl.ledger.entries_by_requester("a1") == []
    assert h.timers.live() == []


# End / reset / disconnect


def test_client_ending_with_open_request_cancels_it(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", None, h.out)
    h.take()

    assert h.ctl.end_call("c", "a1", "changed-mind", h.out) is True

    assert _only(h, "a1", E_CALL_ENDED)["reason"] == "changed-mind"
    assert E_CALL_REQUEST_CANCELLED not in h.events_for("a1")
    assert _only(h, "a2", E_CALL_REQUEST_CANCELLED)["reason"] == "user-cancelled"
    assert h.ctl.ledger.get("c") is None


def test_end_call_with_unrelated_target_is_ignored(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.accept_call("a1", "c", "audio", h.out)
    h.take()

    assert h.ctl.end_call("c", "a2", None, h.out) is False
    assert h.take() == []
    assert h.ctl.peer_of("c") == "a1"


def test_end_call_reason_defaults_to_unknown(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.accept_call("a", "c", "audio", h.out)
    h.take()

    assert h.ctl.end_call("a", "c", None, h.out) is True

    ended = _only(h, "c", E_CALL_ENDED)
    assert ended["reason"] == "unknown"
    assert ended["isAgent"] is True
    assert ended["callType"] == "client-agent"
    assert not h.ctl.registry.find_agent("a").in_call
    assert h.ctl.get_stats()["active_calls"] == 0


def test_reset_busy_state_frees_both_sides(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.agent("b", "200")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.ctl.accept_call("a", "c", "audio", h.out)
    h.take()

    assert h.ctl.reset_busy_state("a", h.out) is True

    assert _only(h, "c", E_CALL_ENDED)["reason"] == "reset"
    assert not h.ctl.registry.find_agent("a").in_call
    assert h.ctl.peer_of("a") is None
    assert _only(h, "b", E_STATUS_CHANGED)["inCall"] is False


def test_force_cleanup_without_target_resets(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.ctl.registry.set_in_call("a", True)
    h.take()

    assert h.ctl.end_call("a", None, None, h.out, force_cleanup=True) is True
    assert not h.ctl.registry.find_agent("a").in_call

    assert h.ctl.end_call("a", None, None, h.out) is False


def test_client_disconnect_cancels_request(harness) -> None:
    h = harness
    h.agent("a1", "100")
    h.agent("a2", "200")
    h.client("c", name="Ann")
    h.ctl.request_call("c", "audio", None, h.out)
    h.take()

    assert h.ctl.disconnect("c", h.out) is Role.CLIENT

    for agent in ("a1", "a2"):
        cancelled = _only(h, agent, E_CALL_REQUEST_CANCELLED)
        assert cancelled["reason"] == "disconnect"
        assert cancelled["userData"] == {"name": "Ann"}
        assert _only(h, agent, E_CLIENT_DISCONNECTED)["socketId"] == "c"
    assert h.timers.live() == []
    assert len(h.ctl.ledger) == 0


def test_target_disconnect_notifies_requester(harness) -> None:
    h = harness
    h.agent("a", "100", "Desk")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)
    h.take()

    h.ctl.disconnect("a", h.out)

    cancelled = _only(h, "c", E_CALL_REQUEST_CANCELLED)
    assert cancelled["agentId"] == "a"
    assert cancelled["agentName"] == "Desk"
    assert cancelled["reason"] == "disconnect"
    assert h.timers.live() == []


def test_disconnect_unknown_identity_is_harmless(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.take()

    assert h.ctl.disconnect("ghost", h.out) is Role.UNASSIGNED
    assert h.take() == []


# Status and config


def test_check_status(harness) -> None:
    h = harness
    h.agent("a", "100", "Desk")
    h.client("c")
    h.take()

    h.ctl.check_status("c", "100", h.out)
    h.ctl.check_status("c", "404", h.out)

    replies = [b for ev, b in h.to("c") if ev == E_STATUS_REPLY]
    assert replies[0] == {
        "online": True,
        "inCall": False,
        "address": "100",
        "agentName": "Desk",
        "agents": 1,
    }
    assert replies[1] == {"online": False, "address": "404"}


def test_offline_reply_when_queueing_disabled(make_harness) -> None:
    h = make_harness(queue_offline=False)
    h.client("c")
    h.take()

    assert h.ctl.request_call("c", "audio", "404", h.out) is None

    assert _only(h, "c", E_OFFLINE) == {"address": "404"}
    assert len(h.ctl.ledger) == 0
    assert h.timers.created == []


def test_stats_and_clear_all(harness) -> None:
    h = harness
    h.agent("a", "100")
    h.client("c")
    h.ctl.request_call("c", "audio", "100", h.out)

    stats = h.ctl.get_stats()
    assert stats["clients"] == 1
    assert stats["agents"] == 1
    assert stats["open_requests"] == 1

    h.ctl.clear_all()

    assert h.timers.live() == []
    assert h.ctl.get_stats()["open_requests"] == 0
    assert h.ctl.registry.role_of("a") is Role.UNASSIGNED
