# services/media_engine.py
"""
Media engine adapter.

The room services treat the engine as an opaque capability provider: they ask
it to create transports, producers and consumers and never touch media bytes.
`AiortcMediaEngine` is the production implementation: every transport is one
`RTCPeerConnection`, published tracks are fanned out through a `MediaRelay`, and
the transport handshake carries SDP offers and answers.
"""
import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List

from aiortc import RTCPeerConnection, RTCRtpSender, RTCSessionDescription
from aiortc.contrib.media import MediaRelay

from server.constants import (
    ANNOUNCED_IP, INITIAL_OUTGOING_BITRATE, LISTEN_IP, MEDIA_CODECS, NEGOTIATION_TIMEOUT
)
from server.services.errors import InvalidRequest, NegotiationTimeout, NotFound

logger = logging.getLogger(__name__)


class MediaEngine(ABC):
    """Operations the room services need from a media engine."""

    @abstractmethod
    def rtp_capabilities(self) -> dict:
        """Capability document clients load before producing or consuming."""

    @abstractmethod
    def can_consume(self, producer_id: str, receiver_caps: dict) -> bool:
        """Whether a receiver with `receiver_caps` can decode `producer_id`."""

    @abstractmethod
    async def create_transport(self, direction: str) -> dict:
        """Create a transport and return its descriptor (with an `id`)."""

    @abstractmethod
    async def connect_transport(self, transport_id: str, params: dict) -> dict:
        """Apply handshake parameters; return the engine's answer, if any."""

    @abstractmethod
    async def produce(self, transport_id: str, kind: str, params: dict) -> str:
        """Create a producer on a send transport and return its id."""

    @abstractmethod
    async def consume(self, transport_id: str, producer_id: str, receiver_caps: dict) -> dict:
        """Create a consumer on a receive transport and return its descriptor."""

    @abstractmethod
    async def close_transport(self, transport_id: str) -> None:
        ...

    @abstractmethod
    async def close_producer(self, producer_id: str) -> None:
        ...

    @abstractmethod
    async def close_consumer(self, consumer_id: str) -> None:
        ...

    async def close(self) -> None:
        """Release everything the engine still holds."""


def _mime_types(caps) -> set:
    return {str(codec.get("mimeType", "")).lower() for codec in (caps or {}).get("codecs", [])}


class _Transport:
    """One peer connection plus the remote tracks not yet claimed by a producer."""

    def __init__(self, direction: str):
        self.id = str(uuid.uuid4())
        self.direction = direction
        self.pc = RTCPeerConnection()
        self.pending_tracks: List = []
        self.track_arrived = asyncio.Event()
        self.pc.on("track", self._on_track)

    def _on_track(self, track):
        logger.debug(f"Transport {self.id} received {track.kind} track")
        self.pending_tracks.append(track)
        self.track_arrived.set()

    async def take_track(self, kind: str, timeout: float):
        """
        Claim the oldest unclaimed remote track of `kind`, waiting for one.

        Raises:
            NegotiationTimeout: If no such track arrives within `timeout` seconds.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            for track in self.pending_tracks:
                if track.kind == kind:
                    self.pending_tracks.remove(track)
                    return track
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise NegotiationTimeout(f"No {kind} track arrived on transport {self.id}.")
            self.track_arrived.clear()
            try:
                await asyncio.wait_for(self.track_arrived.wait(), remaining)
            except asyncio.TimeoutError:
                raise NegotiationTimeout(f"No {kind} track arrived on transport {self.id}.")


class AiortcMediaEngine(MediaEngine):
    """
    aiortc-backed engine.

    Send transports: the client offers its tracks in `connect_transport`, the
    engine answers, and each `produce` claims one of the received tracks.
    Receive transports: `consume` adds a relayed copy of the producer's track
    and returns an offer; the client's answer arrives through
    `connect_transport`.
    """

    def __init__(self, negotiation_timeout: float = NEGOTIATION_TIMEOUT):
        self.negotiation_timeout = negotiation_timeout
        self._relay = MediaRelay()
        self._transports: Dict[str, _Transport] = {}
        self._producers: Dict[str, dict] = {}
        self._consumers: Dict[str, dict] = {}
        self._capabilities = None

    def rtp_capabilities(self) -> dict:
        if self._capabilities is None:
            codecs = []
            for kind in ("audio", "video"):
                allowed = {c["mimeType"].lower() for c in MEDIA_CODECS if c["kind"] == kind}
                for codec in RTCRtpSender.getCapabilities(kind).codecs:
                    if codec.mimeType.lower() not in allowed:
                        continue
                    codecs.append({
                        "kind": kind,
                        "mimeType": codec.mimeType,
                        "clockRate": codec.clockRate,
                        "channels": codec.channels,
                        "parameters": dict(codec.parameters or {}),
                    })
            self._capabilities = {"codecs": codecs, "headerExtensions": []}
        return self._capabilities

    def can_consume(self, producer_id: str, receiver_caps: dict) -> bool:
        producer = self._producers.get(producer_id)
        if producer is None:
            return False
        ours = {
            c["mimeType"].lower()
            for c in self.rtp_capabilities()["codecs"]
            if c["kind"] == producer["kind"]
        }
        return bool(ours & _mime_types(receiver_caps))

    def _transport(self, transport_id: str) -> _Transport:
        transport = self._transports.get(transport_id)
        if transport is None:
            raise NotFound(f"Transport {transport_id} not found.")
        return transport

    async def create_transport(self, direction: str) -> dict:
        transport = _Transport(direction)
        self._transports[transport.id] = transport
        return {
            "id": transport.id,
            "direction": direction,
            "listen_ip": LISTEN_IP,
            "announced_ip": ANNOUNCED_IP,
            "initial_available_outgoing_bitrate": INITIAL_OUTGOING_BITRATE,
        }

    async def connect_transport(self, transport_id: str, params: dict) -> dict:
        transport = self._transport(transport_id)
        sdp, sdp_type = params.get("sdp"), params.get("type")
        if not sdp or sdp_type not in ("offer", "answer"):
            raise InvalidRequest("Handshake needs an SDP offer or answer.")

        await transport.pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=sdp_type))
        if sdp_type == "answer":
            return {}

        answer = await transport.pc.createAnswer()
        await transport.pc.setLocalDescription(answer)
        local = transport.pc.localDescription
        return {"sdp": local.sdp, "type": local.type}

    async def produce(self, transport_id: str, kind: str, params: dict) -> str:
        transport = self._transport(transport_id)
        track = await transport.take_track(kind, self.negotiation_timeout)
        producer_id = str(uuid.uuid4())
        self._producers[producer_id] = {"kind": kind, "track": track, "transport_id": transport_id}
        return producer_id

    async def consume(self, transport_id: str, producer_id: str, receiver_caps: dict) -> dict:
        transport = self._transport(transport_id)
        producer = self._producers.get(producer_id)
        if producer is None:
            raise NotFound(f"Producer {producer_id} not found.")

        sender = transport.pc.addTrack(self._relay.subscribe(producer["track"]))
        offer = await transport.pc.createOffer()
        await transport.pc.setLocalDescription(offer)
        local = transport.pc.localDescription

        consumer_id = str(uuid.uuid4())
        self._consumers[consumer_id] = {"sender": sender, "producer_id": producer_id}
        codecs = [c for c in self.rtp_capabilities()["codecs"] if c["kind"] == producer["kind"]]
        return {
            "id": consumer_id,
            "producer_id": producer_id,
            "kind": producer["kind"],
            "rtp_parameters": {"codecs": codecs},
            "sdp": local.sdp,
            "type": local.type,
        }

    async def close_transport(self, transport_id: str) -> None:
        transport = self._transports.pop(transport_id, None)
        if transport is not None:
            await transport.pc.close()

    async def close_producer(self, producer_id: str) -> None:
        producer = self._producers.pop(producer_id, None)
        if producer is not None:
            producer["track"].stop()

    async def close_consumer(self, consumer_id: str) -> None:
        consumer = self._consumers.pop(consumer_id, None)
        if consumer is not None:
            await consumer["sender"].stop()

    async def close(self) -> None:
        for consumer_id in list(self._consumers):
            await self.close_consumer(consumer_id)
        for producer_id in list(self._producers):
            await self.close_producer(producer_id)
        for transport_id in list(self._transports):
            await self.close_transport(transport_id)
