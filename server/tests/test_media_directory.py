import asyncio

import pytest

from server.services.errors import (
    Incompatible, InvalidRequest, NotFound, PresentationFull, RoomFull
)


def _send_transport(state, owner, transport_id=None):
    transport_id = transport_id or f"send-{owner}"
    state.directory.register_transport(transport_id, owner, "send")
    return transport_id


def test_camera_producer_is_not_echoed_to_owner(state, join):
    alice = join("alice")
    bob = join("bob")
    alice.clear()
    bob.clear()

    slot = state.directory.register_producer("cam", "alice", "video", "camera", _send_transport(state, "alice"))
    assert slot is None
    assert alice.messages == []
    assert bob.types() == ["new_producer"]
    assert bob.payloads("new_producer")[0]["owner_id"] == "alice"


def test_screen_producer_is_announced_to_everyone(state, join):
    alice = join("alice")
    bob = join("bob")
    alice.clear()
    bob.clear()

    slot = state.directory.register_producer("scr", "alice", "video", "screen", _send_transport(state, "alice"))
    assert slot == 0
    for channel in (alice, bob):
        assert channel.types() == ["new_presentation", "room_status"]
        presentation = channel.payloads("new_presentation")[0]
        assert presentation["presentation_slot"] == 0
        assert presentation["presentation_id"] == "scr"
    assert bob.payloads("room_status")[0]["presentation_count"] == 1


def test_max_screen_shares_scenario(state, join):
    for name in ("a", "b", "c"):
        join(name)
        _send_transport(state, name)

    assert state.directory.register_producer("s-a", "a", "video", "screen", "send-a") == 0
    assert state.directory.register_producer("s-b", "b", "video", "screen", "send-b") == 1
    with pytest.raises(PresentationFull):
        state.directory.register_producer("s-c", "c", "video", "screen", "send-c")

    state.directory.stop_screen_share("a")
    assert state.directory.register_producer("s-c2", "c", "video", "screen", "send-c") == 0


def test_presentation_full_changes_nothing(state, join):
    for name in ("a", "b", "c"):
        join(name)
        _send_transport(state, name)
    state.directory.register_producer("s-a", "a", "video", "screen", "send-a")
    state.directory.register_producer("s-b", "b", "video", "screen", "send-b")

    before = (state.presentation_slots.free_slots, state.directory.list_producers())
    with pytest.raises(PresentationFull) as exc:
        state.directory.register_producer("s-c", "c", "video", "screen", "send-c")

    assert exc.value.code == "PRESENTATION_FULL"
    assert isinstance(exc.value, RoomFull)
    assert (state.presentation_slots.free_slots, state.directory.list_producers()) == before
    assert state.directory.producer("s-c") is None


def test_slot_is_free_before_presentation_ended_goes_out(state, join):
    join("a")
    _send_transport(state, "a")
    state.directory.register_producer("s-a", "a", "video", "screen", "send-a")

    seen = []

    class SlotWatcher:
        def deliver(self, message):
            if message["msg_type"] == "presentation_ended":
                seen.append(state.presentation_slots.free_slots)

    state.registry.admit("observer", SlotWatcher())
    state.registry.remove("a")
    assert seen == [[0, 1]]


def test_departure_ends_presentations_before_leave(state, join):
    join("a")
    bob = join("bob")
    _send_transport(state, "a")
    state.directory.register_producer("cam", "a", "video", "camera", "send-a")
    state.directory.register_producer("s-a", "a", "video", "screen", "send-a")
    bob.clear()

    departure = state.registry.remove("a")
    assert bob.types() == ["presentation_ended", "room_status", "user_left", "room_status"]
    assert bob.payloads("presentation_ended")[0] == {
        "producer_id": "s-a", "owner_id": "a", "presentation_id": "s-a"}
    assert {r.id for r in departure.resources} == {"cam", "s-a", "send-a"}
    assert state.directory.producer_count == 0
    assert state.directory.transport_count == 0


def test_screen_audio_follows_its_video(state, join):
    alice = join("alice")
    _send_transport(state, "alice")

    with pytest.raises(InvalidRequest):
        state.directory.register_producer("s-audio", "alice", "audio", "screen", "send-alice")

    state.directory.register_producer("s-video", "alice", "video", "screen", "send-alice")
    assert state.directory.register_producer("s-audio", "alice", "audio", "screen", "send-alice") == 0
    assert state.directory.presentation_count == 1
    assert state.directory.producer("s-audio").presentation_id == "s-video"

    alice.clear()
    removed = state.directory.stop_screen_share("alice")
    assert {r.id for r in removed} == {"s-video", "s-audio"}
    assert len(alice.payloads("presentation_ended")) == 2
    assert state.presentation_slots.free_slots == [0, 1]


def test_stop_screen_share_keeps_camera(state, join):
    join("alice")
    _send_transport(state, "alice")
    state.directory.register_producer("cam", "alice", "video", "camera", "send-alice")
    state.directory.register_producer("scr", "alice", "video", "screen", "send-alice")

    state.directory.stop_screen_share("alice")
    assert [p.id for p in state.directory.producers_of("alice")] == ["cam"]
    # Not sharing: nothing to stop
    assert state.directory.stop_screen_share("alice") == []


def test_register_producer_validates(state, join):
    join("alice")
    join("bob")
    _send_transport(state, "alice")

    with pytest.raises(InvalidRequest):
        state.directory.register_producer("x", "alice", "data", "camera", "send-alice")
    with pytest.raises(InvalidRequest):
        state.directory.register_producer("x", "alice", "video", "window", "send-alice")
    with pytest.raises(NotFound):
        state.directory.register_producer("x", "bob", "video", "camera", "send-alice")
    with pytest.raises(NotFound):
        state.directory.register_producer("x", "ghost", "video", "camera")


@pytest.mark.asyncio
async def test_create_and_consume_through_engine(state, engine, join, caps):
    join("alice")
    bob = join("bob")

    send = await state.directory.create_transport("alice", "send")
    answer = await state.directory.connect_transport("alice", send["id"], {"type": "offer", "sdp": "v=0"})
    assert answer["type"] == "answer"
    produced = await state.directory.create_producer("alice", send["id"], "video", "camera", {})
    assert produced["presentation_slot"] is None
    assert bob.payloads("new_producer")[0]["id"] == produced["id"]

    recv = await state.directory.create_transport("bob", "recv")
    consumer = await state.directory.consume("bob", recv["id"], produced["id"], caps)
    assert consumer["producer_id"] == produced["id"]
    assert state.directory.consumer(consumer["id"]).owner_id == "bob"

    # Closing the producer takes its consumers with it
    removed = state.directory.close_producers([produced["id"]])
    await state.directory.dispose(removed)
    assert state.directory.consumer_count == 0
    assert engine.closed["consumer"] == [consumer["id"]]
    assert engine.closed["producer"] == [produced["id"]]


@pytest.mark.asyncio
async def test_consume_failures(state, join, caps):
    join("alice")
    join("bob")
    send = await state.directory.create_transport("alice", "send")
    produced = await state.directory.create_producer("alice", send["id"], "audio", "camera", {})
    recv = await state.directory.create_transport("bob", "recv")

    with pytest.raises(NotFound):
        await state.directory.consume("bob", recv["id"], "missing", caps)
    with pytest.raises(Incompatible):
        await state.directory.consume("bob", recv["id"], produced["id"], {"codecs": []})
    with pytest.raises(NotFound):
        # someone else's transport
        await state.directory.consume("bob", send["id"], produced["id"], caps)
    with pytest.raises(InvalidRequest):
        # a send transport cannot receive
        await state.directory.consume("alice", send["id"], produced["id"], caps)


@pytest.mark.asyncio
async def test_create_transport_requires_admission(state):
    with pytest.raises(RoomFull):
        await state.directory.create_transport("stranger", "send")
    with pytest.raises(InvalidRequest):
        await state.directory.create_transport("stranger", "sideways")


@pytest.mark.asyncio
async def test_transport_of_departed_owner_is_closed(state, engine, join):
    join("alice")
    engine.gate = asyncio.Event()

    task = asyncio.create_task(state.directory.create_transport("alice", "send"))
    await asyncio.sleep(0)
    state.registry.remove("alice")
    engine.gate.set()

    with pytest.raises(RoomFull):
        await task
    assert len(engine.closed["transport"]) == 1
    assert state.directory.transport_count == 0


@pytest.mark.asyncio
async def test_concurrent_screen_shares_recheck_capacity(engine, join, state):
    state.presentation_slots.capacity = 1
    state.presentation_slots.reset()
    join("a")
    join("b")
    ta = await state.directory.create_transport("a", "send")
    tb = await state.directory.create_transport("b", "send")

    engine.gate = asyncio.Event()
    first = asyncio.create_task(state.directory.create_producer("a", ta["id"], "video", "screen", {}))
    second = asyncio.create_task(state.directory.create_producer("b", tb["id"], "video", "screen", {}))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    engine.gate.set()

    results = await asyncio.gather(first, second, return_exceptions=True)
    assert results[0]["presentation_slot"] == 0
    assert isinstance(results[1], PresentationFull)
    assert len(engine.closed["producer"]) == 1
    assert state.directory.presentation_count == 1


@pytest.mark.asyncio
async def test_consumer_of_closed_producer_is_discarded(state, engine, join, caps):
    join("alice")
    join("bob")
    send = await state.directory.create_transport("alice", "send")
    produced = await state.directory.create_producer("alice", send["id"], "video", "camera", {})
    recv = await state.directory.create_transport("bob", "recv")

    engine.gate = asyncio.Event()
    task = asyncio.create_task(state.directory.consume("bob", recv["id"], produced["id"], caps))
    await asyncio.sleep(0)
    state.directory.close_producers([produced["id"]])
    engine.gate.set()

    with pytest.raises(NotFound):
        await task
    assert len(engine.closed["consumer"]) == 1
    assert state.directory.consumer_count == 0


@pytest.mark.asyncio
async def test_closed_recv_transports_do_not_pile_up(state, engine, join, caps):
    join("a")
    join("b")
    send = await state.directory.create_transport("a", "send")

    for _ in range(5):
        produced = await state.directory.create_producer("a", send["id"], "video", "screen", {})
        recv = await state.directory.create_transport("b", "recv")
        consumer = await state.directory.consume("b", recv["id"], produced["id"], caps)

        await state.directory.dispose(state.directory.stop_screen_share("a"))
        await state.directory.dispose(state.directory.close_transport("b", recv["id"]))
        assert consumer["id"] in engine.closed["consumer"]

    assert [t for t, direction in engine.transports.items() if direction == "recv"] == []
    assert state.directory.transport_count == 1
    assert state.directory.consumer_count == 0


@pytest.mark.asyncio
async def test_close_transport_takes_its_consumers_and_producers(state, engine, join, caps):
    join("alice")
    bob = join("bob")
    send = await state.directory.create_transport("alice", "send")
    screen = await state.directory.create_producer("alice", send["id"], "video", "screen", {})
    recv = await state.directory.create_transport("bob", "recv")
    consumer = await state.directory.consume("bob", recv["id"], screen["id"], caps)

    with pytest.raises(NotFound):
        state.directory.close_transport("bob", send["id"])

    bob.clear()
    removed = state.directory.close_transport("alice", send["id"])
    await state.directory.dispose(removed)

    assert bob.types() == ["presentation_ended", "room_status"]
    assert state.directory.producer_count == 0
    assert state.directory.consumer(consumer["id"]) is None
    assert state.presentation_slots.free_slots == [0, 1]
    assert engine.closed["transport"] == [send["id"]]
    # the viewer's transport stays until the viewer closes it
    assert state.directory.transport(recv["id"]) is not None
