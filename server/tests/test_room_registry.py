import pytest

from server.services.errors import InvalidRequest, NotFound, RoomFull
from server.services.messaging import Channel


def test_admit_sends_snapshot_before_join_delta(state, join):
    alice = join("alice")
    assert alice.types() == ["init", "room_status"]
    init = alice.payloads("init")[0]
    assert init["conn_id"] == "alice"
    assert init["user_slot"] == 0
    assert init["roster"] == []
    assert init["room_status"]["user_count"] == 1

    bob = join("bob")
    # Existing members see the arrival, the joiner sees itself only in its snapshot
    assert alice.types()[-2:] == ["user_joined", "room_status"]
    assert alice.payloads("user_joined")[0]["conn_id"] == "bob"
    assert bob.types()[0] == "init"
    assert [u["conn_id"] for u in bob.payloads("init")[0]["roster"]] == ["alice"]
    assert "user_joined" not in bob.types()


def test_max_users_scenario(state, join):
    channels = {name: join(name) for name in ("a", "b", "c")}
    assert [state.registry.participant(n).user_slot for n in ("a", "b", "c")] == [0, 1, 2]

    with pytest.raises(RoomFull):
        join("d")

    state.registry.remove("a")
    join("e")
    assert state.registry.participant("e").user_slot == 0
    assert channels["b"].payloads("user_left") == [{"conn_id": "a"}]


def test_room_full_mutates_nothing(state, join):
    channels = [join(name) for name in ("a", "b", "c")]
    before = [list(c.messages) for c in channels]

    with pytest.raises(RoomFull):
        state.registry.admit("late", Channel("late"))

    assert len(state.registry) == 3
    assert "late" not in state.registry
    assert state.user_slots.free_slots == []
    assert [c.messages for c in channels] == before


def test_admit_twice_is_rejected(state, join):
    join("a")
    with pytest.raises(InvalidRequest):
        join("a")


def test_rename_updates_others_and_status_reaches_everyone(state, join):
    alice = join("alice")
    bob = join("bob")
    alice.clear()
    bob.clear()

    participant = state.registry.rename("alice", "  Alice  ")
    assert participant.name == "Alice"
    assert participant.named
    assert bob.types() == ["user_updated", "room_status"]
    assert bob.payloads("user_updated")[0]["name"] == "Alice"
    assert alice.types() == ["room_status"]
    assert alice.payloads("room_status") == bob.payloads("room_status")
    assert alice.payloads("room_status")[0]["user_count"] == 2


def test_rename_cleans_names(state, join):
    join("a")
    assert state.registry.rename("a", "").name == "Anonymous"
    assert state.registry.rename("a", None).name == "Anonymous"
    assert len(state.registry.rename("a", "x" * 100).name) == 32


def test_set_media_enabled(state, join):
    alice = join("alice")
    bob = join("bob")
    alice.clear()
    bob.clear()

    state.registry.set_media_enabled("alice", "video", False)
    assert state.registry.participant("alice").video_enabled is False
    assert bob.payloads("media_toggled") == [{"conn_id": "alice", "kind": "video", "enabled": False}]
    assert alice.messages == []

    with pytest.raises(InvalidRequest):
        state.registry.set_media_enabled("alice", "screen", True)
    with pytest.raises(NotFound):
        state.registry.set_media_enabled("ghost", "audio", True)


def test_remove_releases_slot_and_announces(state, join):
    join("a")
    b = join("b")
    b.clear()

    departure = state.registry.remove("a")
    assert departure.participant.conn_id == "a"
    assert state.user_slots.free_slots == [0, 2]
    assert b.types() == ["user_left", "room_status"]
    assert b.payloads("room_status")[0]["user_count"] == 1

    # Unknown or already removed connections are ignored
    assert state.registry.remove("a") is None


def test_snapshot_lists_existing_resources(state, join):
    join("a")
    state.directory.register_transport("t1", "a", "send")
    state.directory.register_producer("p1", "a", "video", "camera", "t1")

    b = join("b")
    resources = b.payloads("init")[0]["resources"]
    assert [r["id"] for r in resources] == ["p1"]
    assert resources[0]["user_slot"] == 0
    assert resources[0]["is_screen"] is False


def test_reset_clears_roster_and_slots(state, join):
    a = join("a")
    join("b")
    state.reset()
    assert len(state.registry) == 0
    assert state.user_slots.free_slots == [0, 1, 2]
    assert a.closed
