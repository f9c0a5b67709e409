# handlers/room_handler.py
import logging

from server.services.errors import InvalidRequest

logger = logging.getLogger(__name__)


class RoomHandler:
    """
    Handles participant-level requests: display name, media toggles and the
    full room view.
    """

    def __init__(self, state):
        """
        Args:
            state (RoomState): Shared room state.
        """
        self.state = state

    async def handle_set_name(self, conn, payload):
        """
        Rename the requesting participant; everyone else receives `user_updated`.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Must contain 'name'.

        Returns:
            dict: The participant after the rename.
        """
        participant = self.state.registry.rename(conn.conn_id, payload.get("name"))
        return participant.to_dict()

    async def handle_toggle_media(self, conn, payload):
        """
        Record a camera or microphone toggle; everyone else receives `media_toggled`.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'kind' ("audio" | "video") and boolean 'enabled'.

        Returns:
            dict: The applied `{kind, enabled}`.
        """
        kind = payload.get("kind")
        enabled = payload.get("enabled")
        if not isinstance(enabled, bool):
            raise InvalidRequest("'enabled' must be a boolean.")
        self.state.registry.set_media_enabled(conn.conn_id, kind, enabled)
        logger.info(f"{conn.conn_id} turned {kind} {'on' if enabled else 'off'}")
        return {"kind": kind, "enabled": enabled}

    async def handle_get_room_state(self, conn, payload):
        return self.state.describe()
