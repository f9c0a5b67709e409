import asyncio
import itertools
import os
import sys
from collections import defaultdict

import pytest

# ──────────────────────────────────────────────────────────────────────────────
# Make sure the repository root (the parent of client/) is on sys.path so that
# `import client...` works without installing the package.
# ──────────────────────────────────────────────────────────────────────────────
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# fmt: off
from client.device import ConsumedTrack, LocalStream, MediaDevice, MediaSource, PublishedTrack
from client.errors import LocalMediaDenied, SignalingError
from client.render import InMemorySurface
from client.session_replicator import SessionReplicator
# fmt: on

CAPS = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000},
    ],
    "headerExtensions": [],
}


class FakeTrack:
    """Stands in for an aiortc MediaStreamTrack, including its `ended` event."""

    def __init__(self, kind):
        self.kind = kind
        self.stopped = False
        self._listeners = defaultdict(list)

    def on(self, event, handler):
        self._listeners[event].append(handler)

    def stop(self):
        if self.stopped:
            return
        self.stopped = True
        for handler in self._listeners["ended"]:
            handler()


class FakeSignaling:
    """
    Scriptable signaling client. `errors[msg_type]` makes that request fail
    once; `gates[msg_type]` holds that request until the event is set.
    """

    def __init__(self, init=None):
        self.init = init or {"conn_id": "me", "user_slot": 1, "roster": [], "resources": []}
        self.admission_error = None
        self.handlers = defaultdict(list)
        self.requests = []
        self.errors = {}
        self.gates = {}
        self.kinds = {}
        self.presentation_slot = 0
        self.connected = False
        self.closed = False
        self._ids = itertools.count(1)

    def on(self, msg_type, handler):
        self.handlers[msg_type].append(handler)

    async def emit(self, msg_type, payload):
        for handler in list(self.handlers[msg_type]):
            result = handler(payload)
            if asyncio.iscoroutine(result):
                await result

    async def connect(self):
        if self.admission_error is not None:
            raise self.admission_error
        self.connected = True
        await self.emit("init", self.init)
        return self.init

    async def request(self, msg_type, payload=None, timeout=None):
        payload = payload or {}
        self.requests.append((msg_type, payload))
        gate = self.gates.get(msg_type)
        if gate is not None:
            await gate.wait()
        error = self.errors.pop(msg_type, None)
        if error is not None:
            raise error
        return self._reply(msg_type, payload)

    def _reply(self, msg_type, payload):
        n = next(self._ids)
        if msg_type == "create_transport":
            return {"id": f"t{n}", "direction": payload["direction"]}
        if msg_type == "consume":
            producer_id = payload["producer_id"]
            return {"id": f"c{n}", "producer_id": producer_id,
                    "kind": self.kinds.get(producer_id, "video"), "type": "offer", "sdp": "v=0"}
        if msg_type == "get_capabilities":
            return {"rtp_capabilities": CAPS}
        if msg_type == "produce":
            slot = self.presentation_slot if payload.get("source") == "screen" else None
            return {"id": f"p{n}", "presentation_slot": slot}
        if msg_type == "stop_screen_share":
            return {"stopped": ["scr"]}
        return {}

    def sent(self, msg_type):
        return [payload for t, payload in self.requests if t == msg_type]

    async def close(self):
        self.connected = False
        self.closed = True


class FakeTransport:
    def __init__(self, device, descriptor, connect, produce=None):
        self.device = device
        self.id = descriptor["id"]
        self._connect = connect
        self._produce = produce
        self.closed = False

    async def consume(self, descriptor):
        await self._connect(self.id, {"type": "answer", "sdp": "v=0"})
        if descriptor["producer_id"] in self.device.fail_consume:
            raise SignalingError("NEGOTIATION_TIMEOUT", "no track")
        return ConsumedTrack(id=descriptor["id"], producer_id=descriptor["producer_id"],
                             kind=descriptor["kind"], track=FakeTrack(descriptor["kind"]))

    async def produce(self, track, source="camera"):
        await self._connect(self.id, {"type": "offer", "sdp": "v=0"})
        result = await self._produce(self.id, track.kind, source, {})
        return PublishedTrack(id=result["id"], kind=track.kind, source=source, track=track,
                              presentation_slot=result.get("presentation_slot"))

    async def close(self):
        self.closed = True


class FakeDevice(MediaDevice):
    def __init__(self):
        self._caps = None
        self.transports = []
        self.fail_consume = set()

    @property
    def loaded(self):
        return self._caps is not None

    @property
    def rtp_capabilities(self):
        return self._caps or {"codecs": []}

    async def load(self, router_capabilities):
        self._caps = router_capabilities

    def can_produce(self, kind):
        return True

    def create_send_transport(self, descriptor, connect, produce):
        transport = FakeTransport(self, descriptor, connect, produce)
        self.transports.append(transport)
        return transport

    def create_recv_transport(self, descriptor, connect):
        transport = FakeTransport(self, descriptor, connect)
        self.transports.append(transport)
        return transport


class FakeMediaSource(MediaSource):
    def __init__(self):
        self.deny_user_media = False
        self.deny_display = False
        self.streams = []

    async def get_user_media(self):
        if self.deny_user_media:
            raise LocalMediaDenied("permission denied")
        stream = LocalStream(audio_tracks=[FakeTrack("audio")], video_tracks=[FakeTrack("video")])
        self.streams.append(stream)
        return stream

    async def get_display_media(self):
        if self.deny_display:
            raise LocalMediaDenied("permission denied")
        stream = LocalStream(video_tracks=[FakeTrack("video")])
        self.streams.append(stream)
        return stream


def camera(producer_id, owner_id, kind="video", user_slot=1, name="Bob"):
    return {"id": producer_id, "owner_id": owner_id, "kind": kind, "source": "camera",
            "is_screen": False, "owner_name": name, "user_slot": user_slot,
            "presentation_slot": None, "presentation_id": None}


def screen(producer_id, owner_id, slot=0, kind="video", presentation_id=None, name="Bob"):
    return {"id": producer_id, "owner_id": owner_id, "kind": kind, "source": "screen",
            "is_screen": True, "owner_name": name, "user_slot": 1,
            "presentation_slot": slot, "presentation_id": presentation_id or producer_id}


@pytest.fixture
def signaling():
    return FakeSignaling()


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def surface():
    return InMemorySurface()


@pytest.fixture
def media_source():
    return FakeMediaSource()


@pytest.fixture
def descriptors():
    """Factories for camera and screen producer descriptors."""
    return camera, screen


@pytest.fixture
def recording_replicator():
    """Replicator whose dispatch callbacks only record what they receive."""
    dispatched = []

    async def consume_producer(descriptor):
        dispatched.append(("producer", descriptor["id"]))

    async def consume_presentation(descriptor):
        dispatched.append(("presentation", descriptor["id"]))

    replicator = SessionReplicator(consume_producer, consume_presentation)
    replicator.dispatched = dispatched
    return replicator
