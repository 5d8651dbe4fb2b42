"""Speaker playback for remote audio.

Writes 16-bit PCM frames to the default (or a named) output device through
sounddevice. The stream is opened lazily on the first frame so that
constructing a player never touches the audio subsystem.
"""

import logging
from typing import Any

import numpy as np

logger = logging.getLogger(__name__)


class AudioPlayer:
    """Plays interleaved int16 PCM frames on an output device."""

    def __init__(
        self,
        sample_rate: int = 48000,
        num_channels: int = 1,
        device: str | int | None = None,
    ) -> None:
        """Initialize audio player.

        Args:
            sample_rate: Audio sample rate in Hz
            num_channels: Interleaved channel count
            device: Optional output device name or index
        """
        self.sample_rate = sample_rate
        self.num_channels = num_channels
        self.device = device
        self.frame_count = 0
        self._stream: Any = None

    def _ensure_stream(self) -> Any:
        if self._stream is None:
            import sounddevice as sd

            self._stream = sd.OutputStream(
                samplerate=self.sample_rate,
                channels=self.num_channels,
                dtype="int16",
                device=self.device,
            )
            self._stream.start()
            logger.info(
                "Audio output opened",
                extra={"device": self.device or "default", "sample_rate": self.sample_rate},
            )
        return self._stream

    def play_frame(self, pcm_data: bytes) -> None:
        """Play a single PCM frame.

        Args:
            pcm_data: Raw interleaved PCM bytes (16-bit signed integers)
        """
        audio_array = np.frombuffer(pcm_data, dtype=np.int16).reshape(-1, self.num_channels)
        self._ensure_stream().write(audio_array)
        self.frame_count += 1

    def close(self) -> None:
        """Stop and close the output stream. Idempotent."""
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.debug("Audio output close failed (non-critical)", extra={"error": str(e)})
