import json

import pytest

from events import ERROR, EXISTING_USERS, SIGNAL, SIGNAL_ERROR, USER_JOINED, USER_LEFT
from signaling import InvalidMessageError, Outbound, SignalingCore


@pytest.fixture
def core():
    return SignalingCore()


def offer(sender="alice", target="bob", room="r1"):
    return {
        "type": "offer",
        "sdp": {"type": "offer", "sdp": "v=0\r\no=- 4611 2 IN IP4 127.0.0.1\r\n"},
        "senderUserId": sender,
        "targetUserId": target,
        "roomId": room,
    }


def join(core, connection_id, room_id, user_id):
    core.connect(connection_id)
    return core.join_room(connection_id, room_id, user_id)


def test_first_joiner_gets_empty_existing_users(core):
    effects = join(core, "A", "r1", "alice")
    assert effects == [Outbound("A", EXISTING_USERS, {"users": []})]


def test_two_joiners(core):
    join(core, "A", "r1", "alice")
    effects = join(core, "B", "r1", "bob")

    assert effects == [
        Outbound("B", EXISTING_USERS, {"users": ["alice"]}),
        Outbound("A", USER_JOINED, {"userId": "bob"}),
    ]


def test_announce_join_never_reaches_joiner(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")
    join(core, "C", "r1", "carol")

    effects = core.broadcaster.announce_join("r1", "carol")
    assert sorted(effect.connection_id for effect in effects) == ["A", "B"]
    assert all(effect.event == USER_JOINED for effect in effects)


def test_signal_relay_reaches_only_target(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")
    join(core, "C", "r1", "carol")

    payload = offer()
    effects = core.signal("A", payload)

    assert effects == [Outbound("B", SIGNAL, payload)]
    assert effects[0].data is payload


def test_signal_forwards_unknown_fields_verbatim(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")

    payload = {
        "type": "candidate",
        "candidate": {"candidate": "candidate:1 1 UDP 2122252543 10.0.0.2 54321 typ host", "sdpMid": "0"},
        "senderUserId": "bob",
        "targetUserId": "alice",
        "roomId": "r1",
        "extra": {"trace": 7},
    }
    assert core.signal("B", payload) == [Outbound("A", SIGNAL, payload)]


def test_end_of_candidates_is_relayed(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")

    payload = {"type": "candidate", "candidate": None, "senderUserId": "bob", "targetUserId": "alice", "roomId": "r1"}
    assert core.signal("B", payload) == [Outbound("A", SIGNAL, payload)]


def test_unresolvable_target_is_dropped(core):
    join(core, "A", "r1", "alice")
    assert core.signal("A", offer(target="carol")) == []


def test_unresolvable_target_notifies_sender_when_enabled():
    core = SignalingCore(notify_signal_errors=True)
    join(core, "A", "r1", "alice")

    effects = core.signal("A", offer(target="carol"))
    assert effects == [
        Outbound("A", SIGNAL_ERROR, {"targetUserId": "carol", "message": "Target user not connected"})
    ]


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "offer", "senderUserId": "alice", "targetUserId": "bob", "roomId": "r1"},
        {"type": "candidate", "senderUserId": "alice", "targetUserId": "bob", "roomId": "r1"},
        {"type": "renegotiate", "sdp": "x", "senderUserId": "alice", "targetUserId": "bob", "roomId": "r1"},
        {"type": "answer", "sdp": "x", "senderUserId": "alice", "roomId": "r1"},
        {"type": "answer", "sdp": "x", "senderUserId": "alice", "targetUserId": "", "roomId": "r1"},
        None,
        ["offer"],
    ],
)
def test_malformed_signal_is_rejected_without_side_effects(core, payload):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")
    before = core.snapshot()

    with pytest.raises(InvalidMessageError):
        core.signal("A", payload)

    assert core.snapshot() == before
    assert core.registry.resolve("bob") == "B"


def test_disconnect_cleanup_across_rooms(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")
    core.join_room("A", "r2", "alice")

    effects = core.disconnect("A")

    assert effects == [Outbound("B", USER_LEFT, {"userId": "alice"})]
    assert core.snapshot() == {"r1": ["bob"]}
    assert core.registry.resolve("alice") is None


def test_disconnect_without_join_is_noop(core):
    join(core, "A", "r1", "alice")
    core.connect("X")

    assert core.disconnect("X") == []
    assert core.snapshot() == {"r1": ["alice"]}
    assert core.connections == {"A"}


def test_last_member_leaving_removes_room(core):
    join(core, "A", "r1", "alice")
    assert core.disconnect("A") == []
    assert core.snapshot() == {}


def test_identity_rebinding(core):
    join(core, "H1", "r1", "alice")
    join(core, "B", "r1", "bob")
    join(core, "H2", "r1", "alice")

    assert core.registry.resolve("alice") == "H2"

    # Old connection going away must not unbind the new one
    assert core.disconnect("H1") == []
    assert core.registry.resolve("alice") == "H2"
    assert core.snapshot() == {"r1": ["alice", "bob"]}

    assert core.signal("B", offer(sender="bob", target="alice")) == [
        Outbound("H2", SIGNAL, offer(sender="bob", target="alice"))
    ]


def test_connection_switching_identity_leaves_old_rooms(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")

    effects = core.join_room("A", "r2", "alice2")

    assert Outbound("B", USER_LEFT, {"userId": "alice"}) in effects
    assert core.snapshot() == {"r1": ["bob"], "r2": ["alice2"]}


def test_dispatch_join_room_envelope(core):
    core.connect("A")
    effects = core.dispatch("A", json.dumps({"event": "join-room", "data": {"roomId": "r1", "userId": "alice"}}))
    assert effects == [Outbound("A", EXISTING_USERS, {"users": []})]


def test_dispatch_join_room_positional_args(core):
    core.connect("A")
    core.dispatch("A", {"event": "join-room", "data": ["r1", "alice"]})
    assert core.snapshot() == {"r1": ["alice"]}


def test_dispatch_signal_envelope(core):
    join(core, "A", "r1", "alice")
    join(core, "B", "r1", "bob")
    payload = offer()
    assert core.dispatch("A", {"event": "signal", "data": payload}) == [Outbound("B", SIGNAL, payload)]


@pytest.mark.parametrize(
    "frame",
    [
        "{not json",
        json.dumps({"data": {}}),
        json.dumps({"event": "shout", "data": {}}),
        json.dumps({"event": "join-room", "data": {"roomId": "r1"}}),
        json.dumps({"event": "join-room", "data": ["r1"]}),
        json.dumps({"event": "join-room", "data": {"roomId": "r1", "userId": 5}}),
    ],
)
def test_dispatch_rejects_malformed_frames(core, frame):
    join(core, "A", "r1", "alice")

    with pytest.raises(InvalidMessageError) as exc_info:
        core.dispatch("A", frame)

    assert core.snapshot() == {"r1": ["alice"]}
    error = exc_info.value.to_outbound("A")
    assert error.connection_id == "A"
    assert error.event == ERROR
    assert error.data["message"]


def test_outbound_to_text():
    assert json.loads(Outbound("A", USER_JOINED, {"userId": "bob"}).to_text()) == {
        "event": "user-joined",
        "data": {"userId": "bob"},
    }


def test_dispatch_rejects_frames_nested_too_deep(core):
    join(core, "A", "r1", "alice")

    with pytest.raises(InvalidMessageError, match="not valid JSON"):
        core.dispatch("A", "[" * 100000)

    assert core.snapshot() == {"r1": ["alice"]}
