"""Real-time transport layer.

Provides the transport capability consumed by the session controller and
its LiveKit implementation.
"""

from src.voice_session.transport.base import (
    AudioDevice,
    LocalAudioTrack,
    MediaKind,
    RemoteAudioTrack,
    RemoteUser,
    RtcTransport,
    TransportEvent,
)

__all__ = [
    "AudioDevice",
    "LocalAudioTrack",
    "MediaKind",
    "RemoteAudioTrack",
    "RemoteUser",
    "RtcTransport",
    "TransportEvent",
]
