"""Voice session client.

Joins a real-time voice channel together with a server-managed
conversational agent, exchanges text with the agent and plays its spoken
replies.
"""

from src.voice_session.config import ApiConfig, ClientConfig, MediaConfig, RtcConfig
from src.voice_session.conversation import ConversationLog, ConversationMessage, Sender
from src.voice_session.errors import (
    DevicePermissionError,
    MediaDeviceError,
    NetworkError,
    ProtocolError,
    TransportError,
    VoiceSessionError,
)
from src.voice_session.session import Phase, SessionController, SessionState

__all__ = [
    "ApiConfig",
    "ClientConfig",
    "MediaConfig",
    "RtcConfig",
    "ConversationLog",
    "ConversationMessage",
    "Sender",
    "DevicePermissionError",
    "MediaDeviceError",
    "NetworkError",
    "ProtocolError",
    "TransportError",
    "VoiceSessionError",
    "Phase",
    "SessionController",
    "SessionState",
]
