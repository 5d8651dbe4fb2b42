"""Error taxonomy for the voice session client.

Every error raised by a component is caught at the controller operation
that triggered it and turned into a conversation log entry. None of them
is fatal to the process.
"""


class VoiceSessionError(Exception):
    """Base class for all voice session errors."""


class DevicePermissionError(VoiceSessionError, PermissionError):
    """Microphone access was denied."""


class MediaDeviceError(VoiceSessionError):
    """Capture device is unavailable, busy, or failed to open."""


class TransportError(VoiceSessionError):
    """Join, publish, or subscribe against the real-time transport failed."""


class ProtocolError(VoiceSessionError):
    """Backend response is malformed, misses required fields, or flags failure."""


class NetworkError(VoiceSessionError, ConnectionError):
    """Backend request could not be completed.

    Attributes:
        status: HTTP status code when the server answered with an error status
    """

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status
