"""In-memory transport and audio device fakes for unit tests.

The fakes record every call so tests can assert exactly how often the
session stack joined, published, subscribed, created or closed tracks.
"""

import asyncio

from src.voice_session.transport.base import (
    AudioDevice,
    LocalAudioTrack,
    MediaKind,
    RemoteAudioTrack,
    RemoteUser,
    RtcTransport,
)


class FakeLocalTrack(LocalAudioTrack):
    """Local track recording enable/mute/close calls."""

    def __init__(self, track_id: str) -> None:
        self._track_id = track_id
        self.enabled = False
        self.muted = True
        self.close_count = 0

    @property
    def track_id(self) -> str:
        return self._track_id

    @property
    def closed(self) -> bool:
        return self.close_count > 0

    async def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    async def set_muted(self, muted: bool) -> None:
        self.muted = muted

    def close(self) -> None:
        self.close_count += 1


class FakeDevice(AudioDevice):
    """Capture device with scriptable permission and failures."""

    def __init__(self, granted: bool = True) -> None:
        self.granted = granted
        self.permission_checks = 0
        self.permission_gate: asyncio.Event | None = None
        self.create_error: Exception | None = None
        self.create_gate: asyncio.Event | None = None
        self.create_calls = 0
        self.tracks: list[FakeLocalTrack] = []

    @property
    def create_count(self) -> int:
        return len(self.tracks)

    @property
    def close_count(self) -> int:
        return sum(track.close_count for track in self.tracks)

    async def check_permission(self) -> bool:
        self.permission_checks += 1
        if self.permission_gate is not None:
            await self.permission_gate.wait()
        return self.granted

    async def create_track(self) -> LocalAudioTrack:
        self.create_calls += 1
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        track = FakeLocalTrack(f"mic-{len(self.tracks) + 1}")
        self.tracks.append(track)
        return track


class FakeRemoteTrack(RemoteAudioTrack):
    """Remote track counting play/stop calls."""

    def __init__(self, track_id: str) -> None:
        self._track_id = track_id
        self.play_count = 0
        self.stop_count = 0

    @property
    def track_id(self) -> str:
        return self._track_id

    def play(self) -> None:
        self.play_count += 1

    def stop(self) -> None:
        self.stop_count += 1


class FakeRemoteUser(RemoteUser):
    """Remote user with mutable audio state."""

    def __init__(
        self,
        uid: int,
        has_audio: bool = False,
        audio_track: RemoteAudioTrack | None = None,
    ) -> None:
        self._uid = uid
        self._has_audio = has_audio
        self._audio_track = audio_track

    @property
    def uid(self) -> int:
        return self._uid

    @property
    def has_audio(self) -> bool:
        return self._has_audio

    @has_audio.setter
    def has_audio(self, value: bool) -> None:
        self._has_audio = value

    @property
    def audio_track(self) -> RemoteAudioTrack | None:
        return self._audio_track

    @audio_track.setter
    def audio_track(self, track: RemoteAudioTrack | None) -> None:
        self._audio_track = track


class FakeTransport(RtcTransport):
    """Transport recording joins, publishes and subscriptions."""

    def __init__(self) -> None:
        super().__init__()
        self.connected = False
        self.users: dict[int, FakeRemoteUser] = {}
        self.published: set[str] = set()
        self.join_calls: list[tuple[str, str, str, int]] = []
        self.publish_calls: list[str] = []
        self.unpublish_calls: list[str] = []
        self.subscribe_calls: list[int] = []
        self.leave_calls = 0
        self.join_error: Exception | None = None
        self.publish_error: Exception | None = None
        self.unpublish_error: Exception | None = None
        self.publish_gate: asyncio.Event | None = None
        self.join_gate: asyncio.Event | None = None
        self.subscribe_gate: asyncio.Event | None = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def remote_users(self) -> list[RemoteUser]:
        return list(self.users.values())

    @property
    def published_track_ids(self) -> set[str]:
        return set(self.published)

    async def join(self, app_id: str, channel: str, token: str, uid: int) -> None:
        self.join_calls.append((app_id, channel, token, uid))
        if self.join_gate is not None:
            await self.join_gate.wait()
        if self.join_error is not None:
            raise self.join_error
        self.connected = True

    async def leave(self) -> None:
        self.leave_calls += 1
        self.connected = False
        self.published.clear()

    async def publish(self, track: LocalAudioTrack) -> None:
        self.publish_calls.append(track.track_id)
        if self.publish_gate is not None:
            await self.publish_gate.wait()
        if self.publish_error is not None:
            raise self.publish_error
        self.published.add(track.track_id)

    async def unpublish(self, track: LocalAudioTrack) -> None:
        self.unpublish_calls.append(track.track_id)
        if self.unpublish_error is not None:
            raise self.unpublish_error
        self.published.discard(track.track_id)

    async def subscribe(self, user: RemoteUser, kind: MediaKind) -> RemoteAudioTrack | None:
        self.subscribe_calls.append(user.uid)
        if self.subscribe_gate is not None:
            await self.subscribe_gate.wait()
        if kind != MediaKind.AUDIO:
            return None
        if user.audio_track is None and isinstance(user, FakeRemoteUser):
            user.audio_track = FakeRemoteTrack(f"remote-{user.uid}")
            user.has_audio = True
        return user.audio_track

    def add_user(self, uid: int, with_audio: bool = False) -> FakeRemoteUser:
        """Make a remote user visible in the live list."""
        track = FakeRemoteTrack(f"remote-{uid}") if with_audio else None
        user = FakeRemoteUser(uid, has_audio=with_audio, audio_track=track)
        self.users[uid] = user
        return user
