# services/state.py
import logging

from server.constants import MAX_SCREEN_SHARES, MAX_USERS
from server.services.media_directory import MediaResourceDirectory
from server.services.room_registry import RoomRegistry
from server.services.slot_allocator import SlotAllocator

logger = logging.getLogger(__name__)


class RoomState:
    """
    The room: both slot pools, the roster and the media directory.

    Created once at startup and handed to every connection handler. `reset`
    returns it to the freshly started state.
    """

    def __init__(self, engine, max_users: int = MAX_USERS, max_presentations: int = MAX_SCREEN_SHARES):
        """
        Args:
            engine (MediaEngine): Media engine backing the directory.
            max_users (int): Size of the user slot pool.
            max_presentations (int): Size of the presentation slot pool.
        """
        self.engine = engine
        self.user_slots = SlotAllocator(max_users)
        self.presentation_slots = SlotAllocator(max_presentations)
        self.registry = RoomRegistry(self.user_slots)
        self.directory = MediaResourceDirectory(engine, self.presentation_slots, self.registry)

    def describe(self) -> dict:
        """Full room view for the `get_room_state` request."""
        return {
            "users": self.registry.roster(),
            "producers": self.directory.list_producers(),
            **self.registry.room_status(),
            "free_user_slots": self.user_slots.free_slots,
            "free_presentation_slots": self.presentation_slots.free_slots,
        }

    def log_state(self) -> None:
        logger.debug(
            f"Room state | users {len(self.registry)}/{self.user_slots.capacity} "
            f"free {self.user_slots.free_slots} | "
            f"screen shares {self.presentation_slots.in_use}/{self.presentation_slots.capacity} "
            f"free {self.presentation_slots.free_slots} | "
            f"transports {self.directory.transport_count} producers {self.directory.producer_count}"
        )

    def reset(self) -> None:
        self.registry.reset()
        self.directory.reset()
        logger.info("Room state reset")

    async def close(self) -> None:
        self.reset()
        await self.engine.close()
