"""
Application-wide constants for room capacity, networking, media codecs and timing.
"""
import logging
import os

from dotenv import load_dotenv

load_dotenv()
logger = logging.getLogger(__name__)


def _positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value <= 0:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default
    return value


# --- Room Limits ---
#: Maximum number of participants admitted at once (size of the user slot pool).
MAX_USERS: int = _positive_int("MAX_USERS", 3)
#: Maximum number of simultaneous screen shares (size of the presentation slot pool).
MAX_SCREEN_SHARES: int = _positive_int("MAX_SCREEN_SHARES", 2)

# --- WebSocket Server ---
#: Interface the signaling server binds to.
WEBSOCKET_HOST: str = os.getenv("WEBSOCKET_HOST", "0.0.0.0")
#: Port the signaling server listens on.
WEBSOCKET_PORT: int = _positive_int("WEBSOCKET_PORT", 8765)

# --- SSL Certificate Paths ---
#: Path to the server's SSL certificate file (PEM format).
SSL_CERT_FILE: str = os.getenv("SSL_CERT_FILE", "certs/cert.pem")
#: Path to the server's SSL private key file (PEM format).
SSL_KEY_FILE: str = os.getenv("SSL_KEY_FILE", "certs/key.pem")

# --- Media Network ---
#: Public address advertised in transport descriptors (None when not behind NAT).
ANNOUNCED_IP = os.getenv("ANNOUNCED_IP")
#: Local address media transports listen on.
LISTEN_IP: str = os.getenv("LISTEN_IP", "0.0.0.0")
#: Initial outgoing bitrate hint passed to clients, in bits per second.
INITIAL_OUTGOING_BITRATE: int = _positive_int("INITIAL_OUTGOING_BITRATE", 1_000_000)

#: Codecs the media engine is allowed to negotiate.
MEDIA_CODECS = [
    {
        "kind": "audio",
        "mimeType": "audio/opus",
        "clockRate": 48000,
        "channels": 2,
        "parameters": {"minptime": 10, "useinbandfec": 1},
    },
    {
        "kind": "video",
        "mimeType": "video/VP8",
        "clockRate": 90000,
    },
]

# --- Heartbeat and Negotiation Timing ---
#: Interval (in seconds) between heartbeat checks.
HEARTBEAT_INTERVAL: int = 10
#: Seconds without a client ping before the connection is closed.
HEARTBEAT_TIMEOUT: int = 30
#: Seconds to wait for a negotiated track or a signaling reply.
NEGOTIATION_TIMEOUT: float = 10.0

# --- Close Codes ---
#: WebSocket close code sent when the room has no free user slot.
CLOSE_ROOM_FULL: int = 4003
#: WebSocket close code sent when a client exceeds the message rate.
CLOSE_RATE_LIMITED: int = 4008

# --- Participant Defaults ---
#: Display name a participant carries until it renames itself.
DEFAULT_DISPLAY_NAME: str = "Anonymous"
#: Maximum length allowed for display names.
DISPLAY_NAME_MAX_LENGTH: int = 32
