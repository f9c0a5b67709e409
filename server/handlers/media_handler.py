# handlers/media_handler.py
import logging

from server.services.errors import InvalidRequest

logger = logging.getLogger(__name__)


def _require(payload, *names):
    """
    Pull required string fields out of a request payload.

    Raises:
        InvalidRequest: If any field is missing or empty.
    """
    values = []
    for name in names:
        value = payload.get(name)
        if not value:
            raise InvalidRequest(f"Missing '{name}'.")
        values.append(value)
    return values


class MediaHandler:
    """
    Handles transport, producer and consumer requests against the media
    directory. Every handler returns the reply payload or raises a RoomError.
    """

    def __init__(self, state):
        """
        Args:
            state (RoomState): Shared room state.
        """
        self.state = state

    async def handle_get_capabilities(self, conn, payload):
        return {"rtp_capabilities": self.state.engine.rtp_capabilities()}

    async def handle_create_transport(self, conn, payload):
        """
        Create a send or receive transport for the requester.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'direction' ("send" | "recv").

        Returns:
            dict: Transport descriptor.
        """
        direction, = _require(payload, "direction")
        return await self.state.directory.create_transport(conn.conn_id, direction)

    async def handle_connect_transport(self, conn, payload):
        """
        Complete a transport handshake.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'transport_id' and handshake 'params'.

        Returns:
            dict: The engine's handshake answer (may be empty).
        """
        transport_id, = _require(payload, "transport_id")
        logger.debug(f"Connecting transport {transport_id} for {conn.conn_id}: {payload.get('params')}")
        return await self.state.directory.connect_transport(
            conn.conn_id, transport_id, payload.get("params") or {})

    async def handle_produce(self, conn, payload):
        """
        Publish a camera or screen track.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'transport_id', 'kind', optional 'source'
                (defaults to "camera") and engine 'params'.

        Returns:
            dict: `{id, presentation_slot}`.
        """
        transport_id, kind = _require(payload, "transport_id", "kind")
        return await self.state.directory.create_producer(
            conn.conn_id, transport_id, kind, payload.get("source") or "camera",
            payload.get("params") or {})

    async def handle_consume(self, conn, payload):
        """
        Receive a producer on one of the requester's receive transports.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'transport_id', 'producer_id' and 'rtp_capabilities'.

        Returns:
            dict: Consumer descriptor.
        """
        transport_id, producer_id = _require(payload, "transport_id", "producer_id")
        return await self.state.directory.consume(
            conn.conn_id, transport_id, producer_id, payload.get("rtp_capabilities") or {})

    async def handle_close_transport(self, conn, payload):
        """
        Close one of the requester's transports once the client is done with it.

        Args:
            conn (ConnectionHandler): Requesting connection.
            payload (dict): Contains 'transport_id'.

        Returns:
            dict: `{closed: transport id}`.
        """
        transport_id, = _require(payload, "transport_id")
        directory = self.state.directory
        await directory.dispose(directory.close_transport(conn.conn_id, transport_id))
        return {"closed": transport_id}

    async def handle_stop_screen_share(self, conn, payload):
        """
        End the requester's screen share without leaving the room.

        Returns:
            dict: `{stopped: [producer ids]}`.
        """
        directory = self.state.directory
        removed = directory.stop_screen_share(conn.conn_id)
        await directory.dispose(removed)
        stopped = [r.id for r in removed if getattr(r, "source", None) == "screen"]
        return {"stopped": stopped}
