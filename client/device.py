# client/device.py
"""
Client media device and local capture.

`AiortcDevice` speaks the server engine's handshake: a send transport offers
its tracks through `connect` and then announces each one with `produce`; a
receive transport answers the offer carried by a consumer descriptor.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from aiortc import RTCPeerConnection, RTCRtpReceiver, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer

from client.errors import LocalMediaDenied

logger = logging.getLogger(__name__)

TRACK_TIMEOUT = 10.0


@dataclass
class PublishedTrack:
    id: str
    kind: str
    source: str
    track: object
    presentation_slot: Optional[int] = None


@dataclass
class ConsumedTrack:
    id: str
    producer_id: str
    kind: str
    track: object


@dataclass
class LocalStream:
    audio_tracks: List = field(default_factory=list)
    video_tracks: List = field(default_factory=list)

    @property
    def tracks(self) -> list:
        return self.audio_tracks + self.video_tracks

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()


class MediaDevice(ABC):
    """Capability-aware factory for send and receive transports."""

    @property
    @abstractmethod
    def loaded(self) -> bool:
        ...

    @property
    @abstractmethod
    def rtp_capabilities(self) -> dict:
        """Capabilities sent with every consume request."""

    @abstractmethod
    async def load(self, router_capabilities: dict) -> None:
        ...

    @abstractmethod
    def can_produce(self, kind: str) -> bool:
        ...

    @abstractmethod
    def create_send_transport(self, descriptor: dict, connect, produce):
        """
        Args:
            descriptor (dict): Server transport descriptor.
            connect: Coroutine `(transport_id, params) -> answer`.
            produce: Coroutine `(transport_id, kind, source, params) -> {id, presentation_slot}`.
        """

    @abstractmethod
    def create_recv_transport(self, descriptor: dict, connect):
        ...


class AiortcSendTransport:
    def __init__(self, descriptor, connect, produce):
        self.id = descriptor["id"]
        self.pc = RTCPeerConnection()
        self._connect = connect
        self._produce = produce
        self.closed = False

    async def produce(self, track, source: str = "camera") -> PublishedTrack:
        """Offer `track` to the server and register it as a producer."""
        self.pc.addTrack(track)
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        local = self.pc.localDescription
        answer = await self._connect(self.id, {"sdp": local.sdp, "type": local.type})
        await self.pc.setRemoteDescription(RTCSessionDescription(sdp=answer["sdp"], type=answer["type"]))

        result = await self._produce(self.id, track.kind, source, {})
        return PublishedTrack(id=result["id"], kind=track.kind, source=source, track=track,
                              presentation_slot=result.get("presentation_slot"))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.pc.close()


class AiortcRecvTransport:
    def __init__(self, descriptor, connect, track_timeout=TRACK_TIMEOUT):
        self.id = descriptor["id"]
        self.pc = RTCPeerConnection()
        self._connect = connect
        self._track_timeout = track_timeout
        self._tracks = asyncio.Queue()
        self.pc.on("track", self._tracks.put_nowait)
        self.closed = False

    async def consume(self, descriptor: dict) -> ConsumedTrack:
        """Answer the consumer's offer and wait for its track."""
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=descriptor["sdp"], type=descriptor["type"]))
        answer = await self.pc.createAnswer()
        await self.pc.setLocalDescription(answer)
        local = self.pc.localDescription
        await self._connect(self.id, {"sdp": local.sdp, "type": local.type})

        track = await asyncio.wait_for(self._tracks.get(), self._track_timeout)
        return ConsumedTrack(id=descriptor["id"], producer_id=descriptor["producer_id"],
                             kind=descriptor["kind"], track=track)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            await self.pc.close()


class AiortcDevice(MediaDevice):
    def __init__(self):
        self._caps = None

    @property
    def loaded(self):
        return self._caps is not None

    @property
    def rtp_capabilities(self):
        return self._caps or {"codecs": []}

    async def load(self, router_capabilities):
        """
        Keep the server codecs this machine can also decode.

        Raises:
            ValueError: If the server offers no codec in common.
        """
        local = set()
        for kind in ("audio", "video"):
            local |= {c.mimeType.lower() for c in RTCRtpReceiver.getCapabilities(kind).codecs}
        codecs = [c for c in router_capabilities.get("codecs", []) if c["mimeType"].lower() in local]
        if not codecs:
            raise ValueError("No codec in common with the server")
        self._caps = {"codecs": codecs, "headerExtensions": []}
        logger.info(f"Device loaded with {[c['mimeType'] for c in codecs]}")

    def can_produce(self, kind):
        return any(c["kind"] == kind for c in self.rtp_capabilities["codecs"])

    def create_send_transport(self, descriptor, connect, produce):
        return AiortcSendTransport(descriptor, connect, produce)

    def create_recv_transport(self, descriptor, connect):
        return AiortcRecvTransport(descriptor, connect)


class MediaSource(ABC):
    """Acquires local camera/microphone and display streams."""

    @abstractmethod
    async def get_user_media(self) -> LocalStream:
        """
        Raises:
            LocalMediaDenied: If capture is refused or unavailable.
        """

    @abstractmethod
    async def get_display_media(self) -> LocalStream:
        """
        Raises:
            LocalMediaDenied: If capture is refused or unavailable.
        """


class PlayerMediaSource(MediaSource):
    """
    Capture through `aiortc.contrib.media.MediaPlayer`.

    Each source is `(file, format, options)` as MediaPlayer takes them, e.g.
    `("/dev/video0", "v4l2", {"video_size": "640x480"})` or
    `(":0.0", "x11grab", {"framerate": "15"})`.
    """

    def __init__(self, camera=None, microphone=None, display=None):
        self.camera = camera
        self.microphone = microphone
        self.display = display

    def _open(self, source):
        path, fmt, options = source
        try:
            return MediaPlayer(path, format=fmt, options=options or {})
        except OSError as e:
            raise LocalMediaDenied(f"Cannot open {path}: {e}")

    async def get_user_media(self):
        if self.camera is None and self.microphone is None:
            raise LocalMediaDenied("No camera or microphone configured")
        stream = LocalStream()
        try:
            for source in (self.microphone, self.camera):
                if source is None:
                    continue
                player = self._open(source)
                if player.audio is not None:
                    stream.audio_tracks.append(player.audio)
                if player.video is not None:
                    stream.video_tracks.append(player.video)
        except LocalMediaDenied:
            stream.stop()
            raise
        return stream

    async def get_display_media(self):
        if self.display is None:
            raise LocalMediaDenied("No display capture configured")
        player = self._open(self.display)
        if player.video is None:
            if player.audio is not None:
                player.audio.stop()
            raise LocalMediaDenied("Display source has no video")
        return LocalStream(
            audio_tracks=[player.audio] if player.audio is not None else [],
            video_tracks=[player.video],
        )
