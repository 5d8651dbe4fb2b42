"""Unit tests for local microphone track management."""

import asyncio

import pytest

from src.voice_session.errors import DevicePermissionError, MediaDeviceError
from src.voice_session.media import LocalTrackHandle, MediaTrackManager, TrackState
from tests.helpers.fake_transport import FakeDevice


@pytest.fixture
def device() -> FakeDevice:
    return FakeDevice()


class TestEnable:
    """Test suite for enabling the microphone."""

    async def test_enable_creates_active_track(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device)

        handle = await manager.set_microphone_enabled(True)

        assert handle is not None
        assert handle.state == TrackState.ACTIVE
        assert handle.is_active
        assert handle.track_id == "mic-1"
        assert device.tracks[0].enabled is True
        assert device.tracks[0].muted is False

    async def test_enable_is_idempotent(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device)

        first = await manager.set_microphone_enabled(True)
        second = await manager.set_microphone_enabled(True)

        assert first is second
        assert device.create_count == 1
        assert device.permission_checks == 1

    async def test_permission_denied(self) -> None:
        device = FakeDevice(granted=False)
        manager = MediaTrackManager(device)

        with pytest.raises(DevicePermissionError):
            await manager.set_microphone_enabled(True)

        assert manager.handle is None
        assert manager.state == TrackState.UNCREATED
        assert device.create_count == 0

    async def test_permission_error_is_a_permission_error(self) -> None:
        manager = MediaTrackManager(FakeDevice(granted=False))

        with pytest.raises(PermissionError):
            await manager.set_microphone_enabled(True)

    async def test_device_failure(self, device: FakeDevice) -> None:
        device.create_error = OSError("device busy")
        manager = MediaTrackManager(device)

        with pytest.raises(MediaDeviceError, match="device busy"):
            await manager.set_microphone_enabled(True)

        assert manager.handle is None

    async def test_retry_after_denial(self) -> None:
        device = FakeDevice(granted=False)
        manager = MediaTrackManager(device)
        with pytest.raises(DevicePermissionError):
            await manager.set_microphone_enabled(True)

        device.granted = True
        handle = await manager.set_microphone_enabled(True)

        assert handle is not None and handle.is_active
        assert device.create_count == 1


class TestDisable:
    """Test suite for disabling the microphone."""

    async def test_disable_releases_device(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device, release_on_disable=True)
        handle = await manager.set_microphone_enabled(True)

        await manager.set_microphone_enabled(False)

        assert handle is not None
        assert handle.state == TrackState.CLOSED
        assert manager.handle is None
        assert device.close_count == 1

    async def test_reenable_after_release_creates_new_track(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device, release_on_disable=True)
        first = await manager.set_microphone_enabled(True)
        await manager.set_microphone_enabled(False)

        second = await manager.set_microphone_enabled(True)

        assert second is not first
        assert second is not None and second.track_id == "mic-2"
        assert device.create_count == 2
        assert device.close_count == 1

    async def test_disable_without_release_mutes(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device, release_on_disable=False)
        handle = await manager.set_microphone_enabled(True)

        await manager.set_microphone_enabled(False)

        assert handle is not None
        assert handle.state == TrackState.DISABLED
        assert manager.handle is handle
        assert device.tracks[0].muted is True
        assert device.tracks[0].enabled is False
        assert device.close_count == 0

    async def test_reenable_without_release_reuses_track(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device, release_on_disable=False)
        first = await manager.set_microphone_enabled(True)
        await manager.set_microphone_enabled(False)

        second = await manager.set_microphone_enabled(True)

        assert second is first
        assert second is not None and second.state == TrackState.ACTIVE
        assert device.tracks[0].muted is False
        assert device.create_count == 1

    async def test_disable_without_handle_is_noop(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device)
        assert await manager.set_microphone_enabled(False) is None
        assert device.create_count == 0


class TestClose:
    """Test suite for closing the track."""

    async def test_close_is_idempotent(self, device: FakeDevice) -> None:
        manager = MediaTrackManager(device)
        await manager.set_microphone_enabled(True)

        manager.close()
        manager.close()

        assert device.close_count == 1
        assert manager.handle is None

    def test_handle_close_is_idempotent(self) -> None:
        handle = LocalTrackHandle()
        handle.close()
        handle.close()
        assert handle.state == TrackState.CLOSED

    async def test_close_during_permission_check_cancels_enable(self, device: FakeDevice) -> None:
        device.permission_gate = asyncio.Event()
        manager = MediaTrackManager(device)

        enabling = asyncio.create_task(manager.set_microphone_enabled(True))
        await asyncio.sleep(0)
        assert manager.state == TrackState.PERMISSION_PENDING

        manager.close()
        device.permission_gate.set()

        assert await enabling is None
        assert device.create_count == 0
        assert manager.handle is None
