# client/conference.py
"""
Conference client: join, publish, screen share, leave.

Ties the signaling client, media device, session replicator, consumption
pipeline and arrangement engine together and keeps a user-visible status line.
"""
import asyncio
import logging
from typing import List, Optional

from client.arrangement import ArrangementEngine
from client.consumption_pipeline import ConsumptionPipeline
from client.device import AiortcDevice
from client.errors import LocalMediaDenied, NotJoined, SignalingError
from client.render import (
    LOCAL_SLOT, InMemorySurface, presentation_label, presentation_slot_id, user_label, user_slot_id
)
from client.session_replicator import SessionReplicator
from client.signaling import SignalingClient

logger = logging.getLogger(__name__)


class ConferenceClient:
    """
    One participant's view of the room.

    Args:
        url (str): Signaling server URL (ws:// or wss://).
        media_source (MediaSource): Local capture.
        surface (RenderSurface, optional): Render target; headless by default.
        device_factory (callable, optional): Builds the MediaDevice.
        signaling_factory (callable, optional): Builds the signaling client from `url`.
    """

    def __init__(self, url, media_source, surface=None, device_factory=AiortcDevice,
                 signaling_factory=SignalingClient):
        self.url = url
        self.media_source = media_source
        self.surface = surface or InMemorySurface()
        self.device_factory = device_factory
        self.signaling_factory = signaling_factory
        self.replicator = SessionReplicator(self._consume_producer, self._consume_presentation)
        self.arrangement = ArrangementEngine(self.surface)
        self._reset_session()

    def _reset_session(self):
        self.signaling = None
        self.device = None
        self.pipeline: Optional[ConsumptionPipeline] = None
        self.send_transport = None
        self.local_stream = None
        self.screen_stream = None
        self.producers = {}
        self.screen_producers = {}
        self.joined = False
        self.receive_only = False
        self.video_enabled = True
        self.audio_enabled = True
        self.status = "Disconnected"

    @property
    def sharing(self) -> bool:
        return self.screen_stream is not None

    # ----- Join / leave -----

    async def join(self, name: str) -> None:
        """
        Connect, capture local media, announce the name, load the device,
        drain buffered resources and publish camera and microphone.

        If the room refuses a send transport the client stays joined as a
        receiver only.

        Raises:
            SignalingError: ROOM_FULL when the room has no free user slot.
            LocalMediaDenied: If camera/microphone capture is refused.
        """
        if self.joined:
            return
        try:
            self.signaling = self.signaling_factory(self.url)
            self._register_events(self.signaling)
            self._set_status("Connecting...")
            await self.signaling.connect()

            self.local_stream = await self.media_source.get_user_media()
            for track in self.local_stream.tracks:
                self.surface.attach(LOCAL_SLOT, track.kind, track)

            await self.signaling.request("set_name", {"name": name})
            caps = await self.signaling.request("get_capabilities")
            self.device = self.device_factory()
            await self.device.load(caps["rtp_capabilities"])
            self.pipeline = ConsumptionPipeline(self.signaling, self.device, self.surface, self.replicator)
            await self.replicator.mark_ready()

            try:
                await self._create_send_transport()
                await self._publish_camera()
            except SignalingError as e:
                if not e.is_room_full:
                    raise
                logger.warning(f"Send transport refused ({e.message}), continuing receive-only")
                self.receive_only = True

            self.joined = True
            self._set_status(f"Connected as {user_label(self.replicator.my_slot)}")
        except SignalingError as e:
            await self._teardown()
            self._set_status("Room is full" if e.is_room_full else f"Join failed: {e.message}")
            raise
        except LocalMediaDenied as e:
            await self._teardown()
            self._set_status(f"Camera/microphone unavailable: {e}")
            raise
        except Exception:
            await self._teardown()
            self._set_status("Join failed")
            raise

    async def leave(self) -> None:
        await self._teardown()

    async def _teardown(self):
        """Release every local and remote resource and return to pristine state."""
        self.arrangement.cancel()
        if self.pipeline is not None:
            await self.pipeline.reset()
        if self.send_transport is not None:
            await self.send_transport.close()
        streams = (self.local_stream, self.screen_stream)
        self.screen_stream = None
        for stream in streams:
            if stream is not None:
                stream.stop()
        if self.signaling is not None:
            await self.signaling.close()
        self.replicator.reset()
        self.surface.reset()
        self._reset_session()
        logger.info("Conference session torn down")

    # ----- Publishing -----

    async def _create_send_transport(self):
        descriptor = await self.signaling.request("create_transport", {"direction": "send"})
        self.send_transport = self.device.create_send_transport(
            descriptor, self._connect_transport, self._produce)

    async def _connect_transport(self, transport_id, params):
        return await self.signaling.request(
            "connect_transport", {"transport_id": transport_id, "params": params})

    async def _produce(self, transport_id, kind, source, params):
        return await self.signaling.request("produce", {
            "transport_id": transport_id, "kind": kind, "source": source, "params": params})

    async def _publish_camera(self):
        for track in self.local_stream.tracks:
            if not self.device.can_produce(track.kind):
                logger.warning(f"Device cannot produce {track.kind}, skipping")
                continue
            published = await self.send_transport.produce(track, "camera")
            self.producers[track.kind] = published

    async def toggle_video(self) -> bool:
        self.video_enabled = await self._toggle("video", not self.video_enabled)
        return self.video_enabled

    async def toggle_audio(self) -> bool:
        self.audio_enabled = await self._toggle("audio", not self.audio_enabled)
        return self.audio_enabled

    async def _toggle(self, kind, enabled):
        if not self.joined:
            raise NotJoined("Join the conference first")
        await self.signaling.request("toggle_media", {"kind": kind, "enabled": enabled})
        return enabled

    # ----- Screen sharing -----

    async def start_screen_share(self) -> bool:
        """
        Publish a display capture as a presentation.

        Returns:
            bool: False when capture was refused or the presentation limit was
            reached; the client stays joined either way.
        """
        if not self.joined:
            raise NotJoined("Join the conference first")
        if self.sharing:
            return True
        if self.send_transport is None:
            self._set_status("Screen sharing needs a send transport")
            return False

        try:
            stream = await self.media_source.get_display_media()
        except LocalMediaDenied as e:
            self._set_status(f"Screen capture unavailable: {e}")
            return False

        try:
            video = await self.send_transport.produce(stream.video_tracks[0], "screen")
        except SignalingError as e:
            stream.stop()
            if e.code == "PRESENTATION_FULL":
                self._set_status("Screen share limit reached")
                return False
            raise

        self.screen_stream = stream
        self.screen_producers = {"video": video}
        for track in stream.audio_tracks:
            try:
                self.screen_producers["audio"] = await self.send_transport.produce(track, "screen")
            except SignalingError as e:
                logger.warning(f"Screen audio not published: {e}")

        stream.video_tracks[0].on("ended", self._on_screen_track_ended)
        self._set_status(f"Sharing screen on {presentation_label(video.presentation_slot)}")
        return True

    def _on_screen_track_ended(self):
        if self.sharing:
            asyncio.ensure_future(self.stop_screen_share())

    async def stop_screen_share(self) -> List[str]:
        """
        Stop sharing. Camera media keeps flowing.

        Returns:
            list: Ids of the screen producers the server closed.
        """
        if not self.sharing:
            return []
        stream, self.screen_stream = self.screen_stream, None
        self.screen_producers = {}
        stream.stop()
        if self.signaling is None or not self.signaling.connected:
            return []
        result = await self.signaling.request("stop_screen_share")
        self._set_status("Screen share stopped")
        return result.get("stopped", [])

    # ----- Rearrangement -----

    def arrangeable_slots(self) -> List[dict]:
        """
        Everything the user can rearrange: the local slot, each participant
        and each presentation, with the label each currently shows.
        """
        slots = [{"id": LOCAL_SLOT, "type": "local", "name": "You",
                  "label": self._current_label(LOCAL_SLOT)}]
        for participant in self.replicator.participants.values():
            slot_id = user_slot_id(participant.conn_id)
            if self.surface.locate(slot_id) is not None:
                slots.append({"id": slot_id, "type": "user", "name": participant.name,
                              "label": self._current_label(slot_id)})
        for record in self.replicator.presentations.values():
            slot_id = presentation_slot_id(record.presentation_id)
            if self.surface.locate(slot_id) is not None:
                slots.append({"id": slot_id, "type": "presentation", "name": record.owner_name,
                              "label": self._current_label(slot_id)})
        return slots

    def _current_label(self, slot_id):
        node = self.surface.locate(slot_id)
        return node.label if node is not None else None

    def select_for_swap(self, slot_id: str):
        return self.arrangement.select_for_swap(slot_id, self._current_label(slot_id))

    # ----- Server events -----

    def _register_events(self, signaling):
        signaling.on("init", self._on_init)
        signaling.on("user_joined", self.replicator.apply_user_joined)
        signaling.on("user_updated", self._on_user_updated)
        signaling.on("user_left", self._on_user_left)
        signaling.on("media_toggled", self.replicator.apply_media_toggled)
        signaling.on("new_producer", self.replicator.on_new_producer)
        signaling.on("new_presentation", self.replicator.on_new_presentation)
        signaling.on("presentation_ended", self._on_presentation_ended)
        signaling.on("room_status", self.replicator.apply_room_status)
        signaling.on("disconnect", self._on_disconnect)

    async def _on_init(self, payload):
        await self.replicator.apply_init(payload)
        self.surface.set_label(LOCAL_SLOT, user_label(self.replicator.my_slot))

    def _on_user_updated(self, payload):
        participant = self.replicator.apply_user_updated(payload)
        if participant is not None and self.surface.locate(user_slot_id(participant.conn_id)) is not None:
            self.surface.set_title(user_slot_id(participant.conn_id), participant.name)

    async def _on_user_left(self, payload):
        conn_id = payload.get("conn_id")
        owned = [presentation_slot_id(p.presentation_id)
                 for p in self.replicator.presentations.values() if p.owner_id == conn_id]
        for slot_id in [user_slot_id(conn_id)] + owned:
            self.arrangement.slot_removed(slot_id)
        self.replicator.apply_user_left(payload)
        if self.pipeline is not None:
            await self.pipeline.remove_all_by_owner(conn_id)

    async def _on_presentation_ended(self, payload):
        presentation_id = payload.get("presentation_id") or payload.get("producer_id")
        self.arrangement.slot_removed(presentation_slot_id(presentation_id))
        self.replicator.apply_presentation_ended(payload)
        if self.pipeline is not None:
            await self.pipeline.remove_by_resource(payload.get("producer_id"))
        own = self.screen_producers.get("video")
        if own is not None and own.id == presentation_id:
            stream, self.screen_stream = self.screen_stream, None
            self.screen_producers = {}
            stream.stop()

    async def _consume_producer(self, descriptor):
        if self.pipeline is not None:
            await self.pipeline.consume_producer(descriptor)

    async def _consume_presentation(self, descriptor):
        if self.pipeline is not None:
            await self.pipeline.consume_presentation(descriptor)

    async def _on_disconnect(self, payload):
        if self.signaling is None:
            return
        logger.warning("Disconnected from server")
        await self._teardown()
        self._set_status("Disconnected")

    def _set_status(self, text):
        self.status = text
        logger.info(f"Status: {text}")
