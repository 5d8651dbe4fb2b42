"""Unit tests for microphone capture and speaker playback.

sounddevice is replaced by a MagicMock in ``sys.modules`` so no audio
hardware is touched.
"""

from collections.abc import Iterator
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from src.voice_session.audio.capture import MicrophoneCapture, check_input_device
from src.voice_session.audio.playback import AudioPlayer
from src.voice_session.errors import MediaDeviceError


@pytest.fixture
def mock_sd() -> Iterator[MagicMock]:
    sd = MagicMock()
    with patch.dict("sys.modules", {"sounddevice": sd}):
        yield sd


class TestCheckInputDevice:
    """Test suite for input device checks."""

    def test_device_available(self, mock_sd: MagicMock) -> None:
        mock_sd.query_devices.return_value = {"name": "mic", "max_input_channels": 1}
        assert check_input_device() is True

    def test_permission_refused(self, mock_sd: MagicMock) -> None:
        mock_sd.query_devices.side_effect = RuntimeError("Permission denied by OS")
        assert check_input_device() is False

    def test_no_device(self, mock_sd: MagicMock) -> None:
        mock_sd.query_devices.side_effect = ValueError("No input device matching 'x'")
        with pytest.raises(MediaDeviceError, match="No input device available"):
            check_input_device("x")

    def test_output_only_device(self, mock_sd: MagicMock) -> None:
        mock_sd.query_devices.return_value = {"name": "speaker", "max_input_channels": 0}
        with pytest.raises(MediaDeviceError, match="no input channels"):
            check_input_device()


class TestMicrophoneCapture:
    """Test suite for microphone capture."""

    async def test_start_and_stop(self, mock_sd: MagicMock) -> None:
        capture = MicrophoneCapture(sample_rate=16000)

        capture.start()
        capture.start()

        mock_sd.RawInputStream.assert_called_once()
        kwargs = mock_sd.RawInputStream.call_args.kwargs
        assert kwargs["blocksize"] == 160
        assert kwargs["dtype"] == "int16"
        assert capture.is_running

        capture.stop()
        capture.stop()
        mock_sd.RawInputStream.return_value.close.assert_called_once()
        assert not capture.is_running

    async def test_open_failure(self, mock_sd: MagicMock) -> None:
        mock_sd.RawInputStream.side_effect = OSError("device busy")
        capture = MicrophoneCapture()

        with pytest.raises(MediaDeviceError, match="device busy"):
            capture.start()

    async def test_full_queue_drops_blocks(self) -> None:
        capture = MicrophoneCapture(queue_size=1)

        capture._enqueue(b"\x00\x00")
        capture._enqueue(b"\x01\x00")

        assert capture.dropped_blocks == 1


class TestAudioPlayer:
    """Test suite for AudioPlayer."""

    def test_stream_opened_lazily(self, mock_sd: MagicMock) -> None:
        player = AudioPlayer(sample_rate=48000)
        mock_sd.OutputStream.assert_not_called()

        pcm_data = np.zeros(480, dtype=np.int16).tobytes()
        player.play_frame(pcm_data)
        player.play_frame(pcm_data)

        mock_sd.OutputStream.assert_called_once()
        written = mock_sd.OutputStream.return_value.write.call_args.args[0]
        assert written.shape == (480, 1)
        assert player.frame_count == 2

    def test_close_is_idempotent(self, mock_sd: MagicMock) -> None:
        player = AudioPlayer()
        player.play_frame(np.zeros(10, dtype=np.int16).tobytes())

        player.close()
        player.close()

        mock_sd.OutputStream.return_value.close.assert_called_once()
