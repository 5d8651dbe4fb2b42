"""Microphone capture.

Reads 10 ms blocks of 16-bit PCM from an input device through sounddevice
and hands them to the event loop as bytes.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any

from src.voice_session.errors import MediaDeviceError

logger = logging.getLogger(__name__)

# Substrings PortAudio/OS errors use when access to the device is refused
_PERMISSION_MARKERS = ("permission", "denied", "not authorized")


def check_input_device(device: str | int | None = None) -> bool:
    """Check that an input device exists and may be opened.

    Returns:
        False when the operating system refused access

    Raises:
        MediaDeviceError: If no usable input device is available
    """
    import sounddevice as sd

    try:
        info = sd.query_devices(device, kind="input")
    except Exception as e:
        message = str(e).lower()
        if any(marker in message for marker in _PERMISSION_MARKERS):
            return False
        raise MediaDeviceError(f"No input device available: {e}") from e

    if int(info.get("max_input_channels", 0)) <= 0:
        raise MediaDeviceError(f"Device '{info.get('name')}' has no input channels")
    return True


class MicrophoneCapture:
    """Async iterator over captured PCM blocks."""

    def __init__(
        self,
        sample_rate: int = 48000,
        num_channels: int = 1,
        device: str | int | None = None,
        queue_size: int = 50,
    ) -> None:
        self.sample_rate = sample_rate
        self.num_channels = num_channels
        self.device = device
        self.samples_per_block = sample_rate // 100
        self._queue: asyncio.Queue[bytes] = asyncio.Queue(maxsize=queue_size)
        self._stream: Any = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.dropped_blocks = 0

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def _on_block(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        # Runs on the PortAudio thread
        if status:
            logger.debug("Input stream status", extra={"status": str(status)})
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._enqueue, bytes(indata))

    def _enqueue(self, block: bytes) -> None:
        try:
            self._queue.put_nowait(block)
        except asyncio.QueueFull:
            self.dropped_blocks += 1

    def start(self) -> None:
        """Open and start the input stream.

        Raises:
            MediaDeviceError: If the device is busy or cannot be opened
        """
        if self._stream is not None:
            return

        import sounddevice as sd

        self._loop = asyncio.get_running_loop()
        try:
            stream = sd.RawInputStream(
                samplerate=self.sample_rate,
                channels=self.num_channels,
                dtype="int16",
                blocksize=self.samples_per_block,
                device=self.device,
                callback=self._on_block,
            )
            stream.start()
        except Exception as e:
            raise MediaDeviceError(f"Failed to open microphone: {e}") from e

        self._stream = stream
        logger.info(
            "Microphone capture started",
            extra={"device": self.device or "default", "sample_rate": self.sample_rate},
        )

    def stop(self) -> None:
        """Stop and close the input stream. Idempotent."""
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning("Error closing microphone stream", extra={"error": str(e)})
        logger.info("Microphone capture stopped")

    async def frames(self) -> AsyncIterator[bytes]:
        """Yield captured blocks while the stream is running."""
        while self.is_running:
            try:
                block = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            yield block
