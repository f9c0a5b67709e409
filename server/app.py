# server/app.py
import logging

from server.services.logging_utils import setup_logging  # logging config must precede other imports
setup_logging()
logger = logging.getLogger(__name__)

import asyncio  # noqa: E402
import os  # noqa: E402
import ssl  # noqa: E402

from websockets import serve  # noqa: E402

from server.constants import (  # noqa: E402
    MAX_SCREEN_SHARES, MAX_USERS, SSL_CERT_FILE, SSL_KEY_FILE, WEBSOCKET_HOST, WEBSOCKET_PORT
)
from server.handlers.connection import ConnectionHandler, build_handlers  # noqa: E402
from server.services.media_engine import AiortcMediaEngine  # noqa: E402
from server.services.state import RoomState  # noqa: E402


def build_ssl_context():
    """
    Build a TLS context when both certificate files exist.

    Returns:
        ssl.SSLContext or None: None means the server runs plain ws://.
    """
    if not (os.path.exists(SSL_CERT_FILE) and os.path.exists(SSL_KEY_FILE)):
        logger.warning("Certificate files not found, serving without TLS")
        return None
    ssl_ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ssl_ctx.load_cert_chain(certfile=SSL_CERT_FILE, keyfile=SSL_KEY_FILE)
    return ssl_ctx


def main():
    """
    Entry point for starting the conference signaling server.

    Reads host and port from the environment (WEBSOCKET_HOST, WEBSOCKET_PORT),
    sets up TLS when certificates are present, and runs the asynchronous server.
    """
    logger.info("Starting conference server...")
    asyncio.run(start_server(WEBSOCKET_HOST, WEBSOCKET_PORT, build_ssl_context()))


async def start_server(host, port, ssl_ctx=None):
    """
    Asynchronously start the WebSocket server.

    One RoomState is created here and shared by every connection; each
    connection gets its own ConnectionHandler.

    Parameters:
        host (str): The host IP address or hostname to bind the server.
        port (int): The port number to listen on.
        ssl_ctx (ssl.SSLContext, optional): TLS context, or None for plain ws://.

    Returns:
        None
    """
    state = RoomState(AiortcMediaEngine())
    handlers = build_handlers(state)

    async def handle_connection(ws):
        await ConnectionHandler(state, handlers).handle_connection(ws)

    scheme = "wss" if ssl_ctx else "ws"
    try:
        async with serve(handle_connection, host, port, ssl=ssl_ctx):
            logger.info(f"Conference server listening on {scheme}://{host}:{port}")
            logger.info(f"User limit: {MAX_USERS}, screen share limit: {MAX_SCREEN_SHARES}")
            await asyncio.Future()  # Run forever
    finally:
        await state.close()


if __name__ == "__main__":
    main()
