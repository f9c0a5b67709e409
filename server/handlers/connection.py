# handlers/connection.py

import asyncio
import json
import logging
import time
import uuid

import websockets

from server.constants import (
    CLOSE_RATE_LIMITED, CLOSE_ROOM_FULL, HEARTBEAT_INTERVAL, HEARTBEAT_TIMEOUT
)
from server.handlers.media_handler import MediaHandler
from server.handlers.room_handler import RoomHandler
from server.services.errors import InvalidRequest, RoomError, RoomFull
from server.services.messaging import Channel, build_error, build_message, send_message
from server.services.rate_limiter import RateLimiter

# -----------------------------------------------------------------------------
# Configuration and Global Instances
# -----------------------------------------------------------------------------
logger = logging.getLogger(__name__)

RATE_LIMITER = RateLimiter()


def build_handlers(state):
    """
    Map every client message type to its handler coroutine.

    Args:
        state (RoomState): Shared room state the handlers operate on.

    Returns:
        dict: msg_type -> coroutine function `(conn, payload) -> dict`.
    """
    room_handler = RoomHandler(state)
    media_handler = MediaHandler(state)
    return {
        "set_name":          room_handler.handle_set_name,
        "toggle_media":      room_handler.handle_toggle_media,
        "get_room_state":    room_handler.handle_get_room_state,
        "get_capabilities":  media_handler.handle_get_capabilities,
        "create_transport":  media_handler.handle_create_transport,
        "connect_transport": media_handler.handle_connect_transport,
        "produce":           media_handler.handle_produce,
        "consume":           media_handler.handle_consume,
        "close_transport":   media_handler.handle_close_transport,
        "stop_screen_share": media_handler.handle_stop_screen_share,
    }


class ConnectionHandler:
    """
    Manages a single WebSocket connection: admission, heartbeat, the
    parse/dispatch loop and cleanup on disconnect.
    """

    def __init__(self, state, handlers=None, rate_limiter=None):
        """
        Args:
            state (RoomState): Shared room state.
            handlers (dict, optional): Handler mapping; built from `state` if omitted.
            rate_limiter (RateLimiter, optional): Defaults to the process-wide limiter.
        """
        self.state = state
        self.handlers = handlers if handlers is not None else build_handlers(state)
        self.rate_limiter = rate_limiter or RATE_LIMITER
        self.ws = None
        self.conn_id = None
        self.channel = None
        self.last_ping = time.monotonic()

    async def handle_connection(self, ws):
        """
        Main entry point for a new WebSocket connection.

        Admission happens before the first message is read: the connection
        either gets a user slot and its `init` snapshot, or a `room_full`
        message and a close frame.

        Parameters:
            ws (websockets.ServerConnection): The WebSocket connection instance.

        Returns:
            None
        """
        self.ws = ws
        self.conn_id = str(uuid.uuid4())
        self.channel = Channel(self.conn_id)
        ip = ws.remote_address[0] if ws.remote_address else None
        logger.info(f"New connection {self.conn_id} from {ip}")

        try:
            self.state.registry.admit(self.conn_id, self.channel)
        except RoomFull as e:
            logger.warning(f"Rejected {self.conn_id}: {e.message}")
            await send_message(ws, build_error("room_full", e.code, e.message))
            await ws.close(code=CLOSE_ROOM_FULL, reason="Room is full")
            return
        self.state.log_state()

        writer = asyncio.create_task(self.channel.pump(ws))
        hb = asyncio.create_task(self._heartbeat())

        try:
            async for raw in ws:
                if ip is not None and not self.rate_limiter.allow(ip):
                    logger.warning(f"Rate limit exceeded by {ip}")
                    await ws.close(code=CLOSE_RATE_LIMITED, reason="Rate limit exceeded")
                    break

                self.last_ping = time.monotonic()
                try:
                    data = self._parse(raw)
                except ValueError as e:
                    logger.warning(f"Unparsable message from {self.conn_id}: {e}")
                    self.channel.deliver(build_error(
                        "error", "INVALID_MESSAGE_FORMAT", "Invalid message format"))
                    continue

                await self._dispatch(data)
        except websockets.exceptions.ConnectionClosedError:
            logger.info(f"Connection {self.conn_id} closed by client")
        except Exception as e:
            logger.error("Connection loop error", exc_info=e)
        finally:
            hb.cancel()
            await self._cleanup(ip)
            self.channel.close()
            try:
                await asyncio.wait_for(writer, timeout=HEARTBEAT_INTERVAL)
            except asyncio.TimeoutError:
                logger.debug(f"Writer for {self.conn_id} did not drain in time")

    def _parse(self, raw):
        """
        Parse one frame into a request dict.

        Raises:
            ValueError: If the frame is not a JSON object with a string msg_type.
        """
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("msg_type"), str):
            raise ValueError("expected a JSON object with a msg_type")
        return data

    async def _dispatch(self, data):
        """
        Run the handler for `data['msg_type']` and enqueue its reply.

        The reply echoes the request's `request_id`. RoomErrors become
        structured error replies; anything else is logged and answered with
        INTERNAL_ERROR so the connection survives.

        Parameters:
            data (dict): The parsed request.
        """
        msg_type = data["msg_type"]
        request_id = data.get("request_id")

        if msg_type == "ping":
            self.channel.deliver(build_message("pong", request_id=request_id))
            return

        handler = self.handlers.get(msg_type)
        if handler is None:
            logger.warning(f"Unknown msg_type: {msg_type}")
            self.channel.deliver(build_error(
                msg_type, "UNKNOWN_MESSAGE_TYPE", "Unknown message type", request_id))
            return

        payload = data.get("payload") or {}
        try:
            if not isinstance(payload, dict):
                raise InvalidRequest("'payload' must be an object.")
            result = await handler(self, payload)
        except RoomError as e:
            logger.info(f"{msg_type} from {self.conn_id} failed: {e.code} {e.message}")
            self.channel.deliver(build_error(msg_type, e.code, e.message, request_id))
            return
        except Exception as e:
            logger.error(f"Handler for {msg_type} crashed", exc_info=e)
            self.channel.deliver(build_error(
                msg_type, "INTERNAL_ERROR", "Internal server error", request_id))
            return

        self.channel.deliver(build_message(msg_type, payload=result, request_id=request_id))

    async def _heartbeat(self):
        """
        Close the connection when the client has been silent for HEARTBEAT_TIMEOUT.
        """
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            if time.monotonic() - self.last_ping > HEARTBEAT_TIMEOUT:
                logger.warning(f"Heartbeat timeout for {self.conn_id}, closing connection")
                await self.ws.close()
                break

    async def _cleanup(self, ip):
        """
        Release the participant's slot and close every media object it owned.
        """
        departure = self.state.registry.remove(self.conn_id)
        if departure is not None:
            await self.state.directory.dispose(departure.resources)
            self.state.log_state()
        if ip is not None and not self.rate_limiter.is_banned(ip):
            self.rate_limiter.forget(ip)
