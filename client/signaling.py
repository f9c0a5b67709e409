# client/signaling.py
"""
WebSocket signaling client.

Requests carry a `request_id`; the reply echoing it resolves the waiting
future. Every other frame is an event and is queued for a dispatcher task that
runs the registered handlers one at a time, in arrival order. Replies are
resolved by the reader itself, so a handler may await requests.
"""
import asyncio
import json
import logging
import uuid
from collections import defaultdict

import websockets

from client.errors import SignalingError, SignalingTimeout

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10.0
HEARTBEAT_INTERVAL = 10


class SignalingClient:
    def __init__(self, url: str, request_timeout: float = REQUEST_TIMEOUT,
                 heartbeat_interval: float = HEARTBEAT_INTERVAL, ssl=None):
        self.url = url
        self.request_timeout = request_timeout
        self.heartbeat_interval = heartbeat_interval
        self.ssl = ssl
        self.ws = None
        self._handlers = defaultdict(list)
        self._pending = {}
        self._events = asyncio.Queue()
        self._admission = None
        self._tasks = []
        self.connected = False

    def on(self, msg_type: str, handler) -> None:
        """
        Register `handler(payload)` for an event type. Handlers may be plain
        functions or coroutine functions. `disconnect` fires once when the
        socket goes away.
        """
        self._handlers[msg_type].append(handler)

    async def connect(self) -> dict:
        """
        Open the socket and wait for admission.

        Returns:
            dict: The `init` snapshot payload.

        Raises:
            SignalingError: ROOM_FULL when the server turns the connection away.
            SignalingTimeout: If neither `init` nor `room_full` arrives in time.
        """
        kwargs = {"ssl": self.ssl} if self.ssl else {}
        self.ws = await websockets.connect(self.url, **kwargs)
        self.connected = True
        self._admission = asyncio.get_running_loop().create_future()
        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._dispatch_loop()),
        ]
        try:
            init = await asyncio.wait_for(self._admission, self.request_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise SignalingTimeout("No admission reply from server")
        except SignalingError:
            await self.close()
            raise
        self._tasks.append(asyncio.create_task(self._heartbeat()))
        return init

    async def request(self, msg_type: str, payload: dict = None, timeout: float = None) -> dict:
        """
        Send a request and wait for its reply.

        Returns:
            dict: The reply payload.

        Raises:
            SignalingError: If the server answered with `success: false` or the
                connection dropped first.
            SignalingTimeout: If no reply arrived within `timeout`.
        """
        if not self.connected:
            raise SignalingError("DISCONNECTED", "Not connected to server")
        request_id = str(uuid.uuid4())
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.ws.send(json.dumps({
                "msg_type": msg_type,
                "request_id": request_id,
                "payload": payload or {},
            }))
            reply = await asyncio.wait_for(future, timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise SignalingTimeout(f"No reply to {msg_type}")
        except websockets.exceptions.ConnectionClosed:
            raise SignalingError("DISCONNECTED", "Connection closed")
        finally:
            self._pending.pop(request_id, None)

        if not reply.get("success", False):
            raise SignalingError(reply.get("error_code"), reply.get("error_message"))
        return reply.get("payload") or {}

    async def close(self) -> None:
        self.connected = False
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current:
                task.cancel()
        self._tasks = []
        if self.ws is not None:
            await self.ws.close()

    # ----- Background tasks -----

    async def _read_loop(self):
        try:
            async for raw in self.ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.warning("Dropping unparsable frame from server")
                    continue
                self._route(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            self._on_closed()

    def _route(self, message):
        msg_type = message.get("msg_type")
        future = self._pending.get(message.get("request_id"))
        if future is not None:
            if not future.done():
                future.set_result(message)
            return

        if self._admission is not None and not self._admission.done():
            if msg_type == "init":
                self._admission.set_result(message.get("payload") or {})
            elif msg_type == "room_full":
                self._admission.set_exception(
                    SignalingError(message.get("error_code") or "ROOM_FULL", message.get("error_message")))
                return
        self._events.put_nowait((msg_type, message.get("payload") or {}))

    def _on_closed(self):
        was_connected = self.connected
        self.connected = False
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SignalingError("DISCONNECTED", "Connection closed"))
        if self._admission is not None and not self._admission.done():
            self._admission.set_exception(SignalingError("DISCONNECTED", "Connection closed"))
        if was_connected:
            self._events.put_nowait(("disconnect", {}))

    async def _dispatch_loop(self):
        while True:
            msg_type, payload = await self._events.get()
            for handler in list(self._handlers.get(msg_type, [])):
                try:
                    result = handler(payload)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"Handler for {msg_type} failed", exc_info=e)
            if msg_type == "disconnect":
                break

    async def _heartbeat(self):
        while self.connected:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.request("ping")
            except (SignalingError, SignalingTimeout) as e:
                logger.warning(f"Heartbeat failed: {e}")
