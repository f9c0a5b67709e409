# services/errors.py
"""
Typed failures raised by the room services and turned into error replies by the
connection loop.
"""


class RoomError(Exception):
    """
    Base class for failures reported back to a client.

    Attributes:
        code (str): Machine-readable error code sent as `error_code`.
        message (str): Human-readable description sent as `error_message`.
    """

    code = "ROOM_ERROR"

    def __init__(self, message: str = None):
        self.message = message or self.__class__.__doc__.strip()
        super().__init__(self.message)


class RoomFull(RoomError):
    """The room has no free user slot."""

    code = "ROOM_FULL"


class PresentationFull(RoomFull):
    """No presentation slot is free."""

    code = "PRESENTATION_FULL"


class NotFound(RoomError):
    """Unknown participant, transport, producer or consumer."""

    code = "NOT_FOUND"


class Incompatible(RoomError):
    """The receiver cannot consume this producer."""

    code = "INCOMPATIBLE"


class NegotiationTimeout(RoomError):
    """The media engine did not complete negotiation in time."""

    code = "NEGOTIATION_TIMEOUT"


class InvalidRequest(RoomError):
    """The request is missing fields or carries invalid values."""

    code = "INVALID_REQUEST"
