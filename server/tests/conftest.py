import asyncio
import itertools
import json
import os
import sys

import pytest

# ──────────────────────────────────────────────────────────────────────────────
# Make sure the repository root (the parent of server/) is on sys.path so that
# `import server.services...` works without installing the package.
# ──────────────────────────────────────────────────────────────────────────────
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# fmt: off
from server.services.errors import NotFound
from server.services.media_engine import MediaEngine
from server.services.state import RoomState
# fmt: on

FAKE_CAPS = {
    "codecs": [
        {"kind": "audio", "mimeType": "audio/opus", "clockRate": 48000, "channels": 2},
        {"kind": "video", "mimeType": "video/VP8", "clockRate": 90000},
    ],
    "headerExtensions": [],
}


class FakeMediaEngine(MediaEngine):
    """
    In-memory engine. Set `gate` to an asyncio.Event to hold every engine
    call at its suspension point until the event is set.
    """

    def __init__(self):
        self.transports = {}
        self.producers = {}
        self.consumers = {}
        self.closed = {"transport": [], "producer": [], "consumer": []}
        self.gate = None
        self._ids = itertools.count(1)

    async def _pause(self):
        if self.gate is not None:
            await self.gate.wait()

    def rtp_capabilities(self):
        return FAKE_CAPS

    def can_consume(self, producer_id, receiver_caps):
        kind = self.producers.get(producer_id)
        if kind is None:
            return False
        wanted = {c["mimeType"].lower() for c in FAKE_CAPS["codecs"] if c["kind"] == kind}
        offered = {c.get("mimeType", "").lower() for c in receiver_caps.get("codecs", [])}
        return bool(wanted & offered)

    async def create_transport(self, direction):
        await self._pause()
        transport_id = f"t{next(self._ids)}"
        self.transports[transport_id] = direction
        return {"id": transport_id, "direction": direction}

    async def connect_transport(self, transport_id, params):
        if transport_id not in self.transports:
            raise NotFound()
        return {"type": "answer", "sdp": "v=0"} if params.get("type") == "offer" else {}

    async def produce(self, transport_id, kind, params):
        await self._pause()
        producer_id = f"p{next(self._ids)}"
        self.producers[producer_id] = kind
        return producer_id

    async def consume(self, transport_id, producer_id, receiver_caps):
        await self._pause()
        consumer_id = f"c{next(self._ids)}"
        self.consumers[consumer_id] = producer_id
        return {"id": consumer_id, "producer_id": producer_id, "kind": self.producers[producer_id]}

    async def close_transport(self, transport_id):
        self.transports.pop(transport_id, None)
        self.closed["transport"].append(transport_id)

    async def close_producer(self, producer_id):
        self.producers.pop(producer_id, None)
        self.closed["producer"].append(producer_id)

    async def close_consumer(self, consumer_id):
        self.consumers.pop(consumer_id, None)
        self.closed["consumer"].append(consumer_id)


class RecordingChannel:
    """Channel stand-in that keeps every delivered message."""

    def __init__(self, conn_id):
        self.conn_id = conn_id
        self.messages = []
        self.closed = False

    def deliver(self, message):
        if not self.closed:
            self.messages.append(message)

    def close(self):
        self.closed = True

    def types(self):
        return [m["msg_type"] for m in self.messages]

    def payloads(self, msg_type):
        return [m["payload"] for m in self.messages if m["msg_type"] == msg_type]

    def clear(self):
        self.messages.clear()


class FakeWebSocket:
    """Server-side connection stand-in fed from a list of raw frames."""

    def __init__(self, frames=(), remote_address=("127.0.0.1", 50000)):
        self.remote_address = remote_address
        self.sent = []
        self.close_code = None
        self._incoming = asyncio.Queue()
        for frame in frames:
            self._incoming.put_nowait(frame)
        self._incoming.put_nowait(None)

    async def send(self, data):
        self.sent.append(json.loads(data))

    async def close(self, code=1000, reason=""):
        if self.close_code is None:
            self.close_code = code
        self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        frame = await self._incoming.get()
        if frame is None:
            raise StopAsyncIteration
        return frame


@pytest.fixture
def engine():
    return FakeMediaEngine()


@pytest.fixture
def state(engine):
    return RoomState(engine, max_users=3, max_presentations=2)


@pytest.fixture
def join(state):
    """Admit a participant under `conn_id` and return its recording channel."""

    def _join(conn_id):
        channel = RecordingChannel(conn_id)
        state.registry.admit(conn_id, channel)
        return channel

    return _join


@pytest.fixture
def make_ws():
    return FakeWebSocket


@pytest.fixture
def caps():
    return FAKE_CAPS
