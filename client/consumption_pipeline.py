# client/consumption_pipeline.py
"""
Turns announced remote resources into rendered media.

Each consume is all-or-nothing: it either ends with a receive transport, a
consumer and an attached render slot recorded together, or every partial step
is rolled back.
"""
import logging
from dataclasses import dataclass
from typing import Dict, Optional

from client.errors import ClientError
from client.render import (
    PEERS, PRESENTATIONS, presentation_label, presentation_slot_id, user_label, user_slot_id
)

logger = logging.getLogger(__name__)


@dataclass
class ConsumedResource:
    producer_id: str
    owner_id: str
    kind: str
    slot_id: str
    is_presentation: bool
    presentation_id: Optional[str]
    consumer: object
    transport: object


class ConsumptionPipeline:
    """
    Args:
        signaling (SignalingClient): Used for transport and consume requests.
        device (MediaDevice): Loaded media device.
        surface (RenderSurface): Where consumed tracks are attached.
        replicator (SessionReplicator): Mirror updated on success and removal.
    """

    def __init__(self, signaling, device, surface, replicator):
        self.signaling = signaling
        self.device = device
        self.surface = surface
        self.replicator = replicator
        self._consumed: Dict[str, ConsumedResource] = {}
        self._in_flight = set()
        self._cancelled = set()

    @property
    def consumed(self) -> Dict[str, ConsumedResource]:
        return dict(self._consumed)

    def is_consumed(self, producer_id: str) -> bool:
        return producer_id in self._consumed

    async def consume_producer(self, descriptor: dict) -> bool:
        return await self.consume(descriptor, presentation=False)

    async def consume_presentation(self, descriptor: dict) -> bool:
        return await self.consume(descriptor, presentation=True)

    async def consume(self, descriptor: dict, presentation: bool) -> bool:
        """
        Consume one remote producer and render it.

        Own camera and microphone producers are skipped; own presentations
        are rendered. A producer already consumed or being consumed is
        ignored.

        Returns:
            bool: True if the resource is now rendered by this call.
        """
        producer_id = descriptor["id"]
        owner_id = descriptor.get("owner_id")
        if owner_id == self.replicator.my_id and not presentation:
            return False
        if producer_id in self._consumed or producer_id in self._in_flight:
            logger.debug(f"Producer {producer_id} already consumed")
            return False

        self._in_flight.add(producer_id)
        transport = consumed = transport_id = None
        slot_id = self._slot_id(descriptor, presentation)
        created_slot = attached = False
        try:
            transport_info = await self.signaling.request("create_transport", {"direction": "recv"})
            transport_id = transport_info["id"]
            transport = self.device.create_recv_transport(transport_info, self._connect_transport)
            consumer_info = await self.signaling.request("consume", {
                "transport_id": transport.id,
                "producer_id": producer_id,
                "rtp_capabilities": self.device.rtp_capabilities,
            })
            consumed = await transport.consume(consumer_info)

            if producer_id in self._cancelled:
                raise LookupError(f"Producer {producer_id} ended while it was being consumed")

            if self.surface.locate(slot_id) is None:
                self.surface.create_slot(slot_id, self._label(descriptor, presentation),
                                         PRESENTATIONS if presentation else PEERS,
                                         title=self._title(descriptor, presentation))
                created_slot = True
            self.surface.attach(slot_id, consumed.kind, consumed.track)
            attached = True

            self._consumed[producer_id] = ConsumedResource(
                producer_id=producer_id,
                owner_id=owner_id,
                kind=consumed.kind,
                slot_id=slot_id,
                is_presentation=presentation,
                presentation_id=descriptor.get("presentation_id") if presentation else None,
                consumer=consumed,
                transport=transport,
            )
            if presentation:
                self.replicator.record_presentation(descriptor)
            else:
                self.replicator.ensure_participant(owner_id, descriptor.get("owner_name") or "Anonymous",
                                                   descriptor.get("user_slot"))
            logger.info(f"Consuming {descriptor.get('kind')} {producer_id} from {owner_id} in {slot_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to consume {producer_id}", exc_info=e)
            if attached:
                self.surface.detach(slot_id, consumed.kind)
            if created_slot:
                self.surface.remove(slot_id)
            await self._release_transport(transport, transport_id)
            return False
        finally:
            self._in_flight.discard(producer_id)
            self._cancelled.discard(producer_id)

    async def _connect_transport(self, transport_id, params):
        return await self.signaling.request(
            "connect_transport", {"transport_id": transport_id, "params": params})

    async def _release_transport(self, transport, transport_id):
        """
        Close a receive transport locally and ask the server to drop its side.
        Nothing is sent once the connection is gone; the server cleans up on
        disconnect.
        """
        if transport is not None:
            await transport.close()
        if transport_id is None or not self.signaling.connected:
            return
        try:
            await self.signaling.request("close_transport", {"transport_id": transport_id})
        except ClientError as e:
            logger.warning(f"Server did not close transport {transport_id}: {e}")

    async def remove_by_resource(self, producer_id: str) -> bool:
        """
        Tear down the consumer of `producer_id` and its render slot once no
        other consumed track shares it. A consume still in flight is cancelled.

        Returns:
            bool: True if something was removed.
        """
        if producer_id in self._in_flight:
            self._cancelled.add(producer_id)
        entry = self._consumed.pop(producer_id, None)
        if entry is None:
            return False

        self.surface.detach(entry.slot_id, entry.kind)
        if not any(other.slot_id == entry.slot_id for other in self._consumed.values()):
            self.surface.remove(entry.slot_id)
            if entry.is_presentation:
                self.replicator.release_presentation(entry.presentation_id or entry.producer_id)
        await self._release_transport(entry.transport, entry.transport.id)
        logger.info(f"Removed consumer of {producer_id}")
        return True

    async def remove_all_by_owner(self, owner_id: str) -> int:
        """
        Remove everything consumed from `owner_id`, including its user slot.

        Returns:
            int: Number of consumers removed.
        """
        removed = 0
        for producer_id in [p for p, e in self._consumed.items() if e.owner_id == owner_id]:
            if await self.remove_by_resource(producer_id):
                removed += 1
        self.surface.remove(user_slot_id(owner_id))
        return removed

    async def reset(self) -> None:
        """Close every consumer and forget in-flight work."""
        for producer_id in list(self._consumed):
            await self.remove_by_resource(producer_id)
        self._cancelled |= self._in_flight

    # ----- Naming -----

    def _slot_id(self, descriptor, presentation):
        if presentation:
            return presentation_slot_id(descriptor.get("presentation_id") or descriptor["id"])
        return user_slot_id(descriptor["owner_id"])

    def _label(self, descriptor, presentation):
        if presentation:
            return presentation_label(descriptor.get("presentation_slot"))
        return user_label(descriptor.get("user_slot"))

    def _title(self, descriptor, presentation):
        name = descriptor.get("owner_name") or "Anonymous"
        if presentation:
            if descriptor.get("owner_id") == self.replicator.my_id:
                return "Your Screen Share"
            return f"{name}'s Screen"
        return name
