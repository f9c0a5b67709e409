import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone

import websockets


logger = logging.getLogger(__name__)


def build_message(
    msg_type,
    success=True,
    payload=None,
    error_code=None,
    error_message=None,
    request_id=None,
):
    """
    Build a structured server message.

    Args:
        msg_type (str): Message type identifier.
        success (bool, optional): Operation status. Defaults to True.
        payload (dict, optional): Message data. Defaults to {}.
        error_code (str, optional): Error code on failure.
        error_message (str, optional): Error description on failure.
        request_id (str, optional): Identifier of the request this message answers.
            Broadcast deltas carry none.

    The structured message contains:
      - message_id: A new unique identifier for each message.
      - timestamp: The UTC timestamp when the message was created.
      - msg_type: The type of message.
      - success: Boolean indicator of operation status.
      - error_code and error_message: Only populated if the request failed.
      - payload: Operation-specific data.

    Returns:
        dict: The message, ready for `json.dumps`.
    """
    message = {
        "message_id": str(uuid.uuid4()),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "msg_type": msg_type,
        "success": success,
        "payload": payload if payload is not None else {},
    }
    if not success:
        message["error_code"] = error_code if error_code else "UNKNOWN_ERROR"
        message["error_message"] = error_message if error_message else "An unknown error occurred."
    if request_id is not None:
        message["request_id"] = request_id
    return message


def build_error(msg_type, error_code, error_message, request_id=None):
    """
    Build a structured error reply.

    Args:
        msg_type (str): Original message type.
        error_code (str): Error code identifier.
        error_message (str): Human-readable error message.
        request_id (str, optional): Identifier of the failed request.

    Returns:
        dict: The error message.
    """
    return build_message(
        msg_type,
        success=False,
        error_code=error_code,
        error_message=error_message,
        request_id=request_id,
    )


async def send_message(websocket, message):
    """
    Serialize and send one message, logging instead of raising on failure.

    Args:
        websocket: WebSocket connection.
        message (dict): Message built by `build_message`.

    Returns:
        bool: True if the frame was written.
    """
    try:
        await websocket.send(json.dumps(message))
        return True
    except websockets.exceptions.ConnectionClosed:
        logger.debug(f"Dropped {message.get('msg_type')}: connection closed")
    except (TypeError, ValueError) as e:
        logger.error(f"Failed to serialize {message.get('msg_type')}: {e}")
    return False


class Channel:
    """
    Outbound mailbox of one connection.

    `deliver` only enqueues, so services can broadcast inside a single
    synchronous step and every client sees deltas in mutation order. The
    connection's writer task runs `pump` to flush the queue onto the socket.
    """

    def __init__(self, conn_id):
        self.conn_id = conn_id
        self.closed = False
        self._queue = asyncio.Queue()

    def deliver(self, message):
        if self.closed:
            return
        self._queue.put_nowait(message)

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._queue.put_nowait(None)  # sentinel stops the pump

    async def pump(self, websocket):
        """
        Write queued messages to `websocket` until the channel closes.

        Args:
            websocket: WebSocket connection owned by this channel.
        """
        while True:
            message = await self._queue.get()
            if message is None:
                break
            if not await send_message(websocket, message):
                break
