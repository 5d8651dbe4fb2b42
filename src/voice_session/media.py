"""Local microphone track management.

Owns the lifecycle of the local capture track:
permission check → create → enable/unmute → disable → close.

Track state machine:
- UNCREATED → PERMISSION_PENDING (on enable)
- PERMISSION_PENDING → ACTIVE (permission granted, track created)
- PERMISSION_PENDING → UNCREATED (permission denied or device failure)
- ACTIVE → DISABLED (on disable without release)
- DISABLED → ACTIVE (on re-enable)
- * → CLOSED (on close; closing again is a no-op)
"""

import asyncio
import logging
from enum import Enum

from src.voice_session.errors import DevicePermissionError, MediaDeviceError
from src.voice_session.transport.base import AudioDevice, LocalAudioTrack

logger = logging.getLogger(__name__)


class TrackState(Enum):
    """Local track handle states."""

    UNCREATED = "uncreated"
    PERMISSION_PENDING = "permission_pending"
    ACTIVE = "active"
    DISABLED = "disabled"
    CLOSED = "closed"


class LocalTrackHandle:
    """Binding between the session and the local capture device.

    Created and mutated only by :class:`MediaTrackManager`; other components
    hold a reference and read ``state`` and ``track``.
    """

    def __init__(self) -> None:
        self._state = TrackState.UNCREATED
        self._track: LocalAudioTrack | None = None

    def __repr__(self) -> str:
        return f"LocalTrackHandle(state={self._state.value}, track_id={self.track_id})"

    @property
    def state(self) -> TrackState:
        return self._state

    @property
    def track(self) -> LocalAudioTrack | None:
        return self._track

    @property
    def track_id(self) -> str | None:
        return self._track.track_id if self._track is not None else None

    @property
    def is_active(self) -> bool:
        return self._state == TrackState.ACTIVE and self._track is not None

    def close(self) -> None:
        """Release the device. Idempotent."""
        if self._state == TrackState.CLOSED:
            return

        if self._track is not None:
            try:
                self._track.close()
            except Exception as e:
                logger.warning(
                    "Error closing local audio track",
                    extra={"track_id": self._track.track_id, "error": str(e)},
                )
        self._state = TrackState.CLOSED


class MediaTrackManager:
    """Manages the single local microphone track.

    At most one non-closed handle exists at any time. Enable/disable calls
    are serialized; :meth:`close` is not, so a session stop always wins over
    a permission prompt or device open still in flight.
    """

    def __init__(self, device: AudioDevice, release_on_disable: bool = True) -> None:
        """Initialize track manager.

        Args:
            device: Capture device factory
            release_on_disable: Close the handle on disable instead of muting it
        """
        self._device = device
        self._release_on_disable = release_on_disable
        self._handle: LocalTrackHandle | None = None
        self._lock = asyncio.Lock()
        # Bumped by close() so in-flight enables can detect they were cancelled
        self._generation = 0

    @property
    def handle(self) -> LocalTrackHandle | None:
        """Current non-closed handle, if any."""
        return self._handle

    @property
    def state(self) -> TrackState:
        return self._handle.state if self._handle is not None else TrackState.UNCREATED

    @property
    def release_on_disable(self) -> bool:
        return self._release_on_disable

    async def set_microphone_enabled(self, enabled: bool) -> LocalTrackHandle | None:
        """Enable or disable the microphone.

        Args:
            enabled: Target microphone state

        Returns:
            The active handle when enabling succeeded, otherwise None

        Raises:
            DevicePermissionError: If microphone access was denied
            MediaDeviceError: If the device is unavailable or busy
        """
        async with self._lock:
            if enabled:
                return await self._enable()
            await self._disable()
            return None

    async def _enable(self) -> LocalTrackHandle | None:
        handle = self._handle
        if handle is not None and handle.state == TrackState.ACTIVE:
            return handle

        if handle is not None and handle.state == TrackState.DISABLED and handle.track:
            await handle.track.set_enabled(True)
            await handle.track.set_muted(False)
            handle._state = TrackState.ACTIVE
            logger.info("Local microphone re-enabled", extra={"track_id": handle.track_id})
            return handle

        generation = self._generation
        handle = LocalTrackHandle()
        handle._state = TrackState.PERMISSION_PENDING
        self._handle = handle

        try:
            granted = await self._device.check_permission()
        except Exception as e:
            self._abandon(handle)
            raise MediaDeviceError(f"Microphone permission check failed: {e}") from e

        if generation != self._generation:
            logger.info("Microphone enable cancelled during permission check")
            return None

        if not granted:
            self._abandon(handle)
            raise DevicePermissionError("Microphone permission denied")

        try:
            track = await self._device.create_track()
        except MediaDeviceError:
            self._abandon(handle)
            raise
        except Exception as e:
            self._abandon(handle)
            raise MediaDeviceError(f"Failed to open microphone: {e}") from e

        if generation != self._generation:
            # Closed while the device was opening
            track.close()
            logger.info("Microphone enable cancelled during device open")
            return None

        handle._track = track
        try:
            await track.set_enabled(True)
            await track.set_muted(False)
        except Exception as e:
            handle.close()
            self._handle = None
            raise MediaDeviceError(f"Failed to start microphone: {e}") from e

        handle._state = TrackState.ACTIVE
        logger.info("Local microphone track created", extra={"track_id": track.track_id})
        return handle

    def _abandon(self, handle: LocalTrackHandle) -> None:
        handle._state = TrackState.UNCREATED
        if self._handle is handle:
            self._handle = None

    async def _disable(self) -> None:
        handle = self._handle
        if handle is None:
            return

        if self._release_on_disable:
            self.close()
            return

        if handle.state == TrackState.ACTIVE and handle.track is not None:
            await handle.track.set_muted(True)
            await handle.track.set_enabled(False)
            handle._state = TrackState.DISABLED
            logger.info("Local microphone disabled", extra={"track_id": handle.track_id})

    def close(self) -> None:
        """Close the current handle and release the device. Idempotent."""
        self._generation += 1
        handle = self._handle
        self._handle = None
        if handle is None:
            return

        track_id = handle.track_id
        handle.close()
        logger.info("Local microphone track closed", extra={"track_id": track_id})
