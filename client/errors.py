# client/errors.py
"""
Failures surfaced by the conference client.
"""

ROOM_FULL_CODES = ("ROOM_FULL", "PRESENTATION_FULL")


class ClientError(Exception):
    """Base class for client-side failures."""


class SignalingError(ClientError):
    """
    The server rejected a request.

    Attributes:
        code (str): Server `error_code` (e.g. ROOM_FULL, NOT_FOUND).
        message (str): Server `error_message`.
    """

    def __init__(self, code, message=None):
        self.code = code or "UNKNOWN_ERROR"
        self.message = message or self.code
        super().__init__(f"{self.code}: {self.message}")

    @property
    def is_room_full(self) -> bool:
        return self.code in ROOM_FULL_CODES


class SignalingTimeout(ClientError):
    """The server did not answer a request in time."""


class LocalMediaDenied(ClientError):
    """Camera, microphone or display capture was refused."""


class NotJoined(ClientError):
    """The operation needs a joined conference."""
