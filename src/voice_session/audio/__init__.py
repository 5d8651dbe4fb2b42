"""Audio device I/O for microphone capture and speaker playback."""

from src.voice_session.audio.capture import MicrophoneCapture, check_input_device
from src.voice_session.audio.playback import AudioPlayer

__all__ = [
    "AudioPlayer",
    "MicrophoneCapture",
    "check_input_device",
]
