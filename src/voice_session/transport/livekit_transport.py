"""LiveKit transport implementation.

Adapts a LiveKit ``rtc.Room`` to the :class:`RtcTransport` capability:
join/leave, publishing the local microphone track, manual subscription to
remote audio, participant events and the live remote participant list.
"""

import asyncio
import logging
import uuid
import zlib

import numpy as np
from livekit import rtc

from src.voice_session.audio.capture import MicrophoneCapture, check_input_device
from src.voice_session.audio.playback import AudioPlayer
from src.voice_session.transport.base import (
    AudioDevice,
    LocalAudioTrack,
    MediaKind,
    RemoteAudioTrack,
    RemoteUser,
    RtcTransport,
    TransportEvent,
)

logger = logging.getLogger(__name__)

SUBSCRIBE_TIMEOUT_S = 5.0


def identity_to_uid(identity: str) -> int:
    """Map a LiveKit participant identity onto a UID in ``[0, 65535]``.

    Numeric identities in range map to themselves; anything else maps to a
    stable CRC32-derived value.
    """
    if identity.isdigit() and int(identity) <= 65535:
        return int(identity)
    return zlib.crc32(identity.encode("utf-8")) % 65536


class LiveKitLocalAudioTrack(LocalAudioTrack):
    """Microphone capture feeding a LiveKit audio source."""

    def __init__(
        self,
        name: str,
        track: rtc.LocalAudioTrack,
        source: rtc.AudioSource,
        capture: MicrophoneCapture,
    ) -> None:
        self._name = name
        self._track = track
        self._source = source
        self._capture = capture
        self._pump_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def track_id(self) -> str:
        return self._name

    @property
    def rtc_track(self) -> rtc.LocalAudioTrack:
        return self._track

    async def set_enabled(self, enabled: bool) -> None:
        if enabled:
            if self._closed or self._pump_task is not None:
                return
            self._capture.start()
            self._pump_task = asyncio.create_task(self._pump())
            return

        self._stop_pump()

    async def set_muted(self, muted: bool) -> None:
        if muted:
            self._track.mute()
        else:
            self._track.unmute()

    async def _pump(self) -> None:
        """Copy captured blocks into the LiveKit audio source."""
        samples = self._capture.samples_per_block
        channels = self._capture.num_channels
        try:
            async for block in self._capture.frames():
                audio_frame = rtc.AudioFrame.create(
                    sample_rate=self._capture.sample_rate,
                    num_channels=channels,
                    samples_per_channel=samples,
                )
                pcm_data = np.frombuffer(block, dtype=np.int16)
                np.copyto(np.asarray(audio_frame.data)[: len(pcm_data)], pcm_data)
                await self._source.capture_frame(audio_frame)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Microphone pump failed", extra={"track_id": self._name, "error": str(e)})

    def _stop_pump(self) -> None:
        self._capture.stop()
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stop_pump()


class LiveKitMicrophone(AudioDevice):
    """Default input device exposed as LiveKit local audio tracks."""

    def __init__(
        self,
        sample_rate: int = 48000,
        num_channels: int = 1,
        device: str | int | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.num_channels = num_channels
        self.device = device

    async def check_permission(self) -> bool:
        return await asyncio.to_thread(check_input_device, self.device)

    async def create_track(self) -> LocalAudioTrack:
        name = f"mic-{uuid.uuid4().hex[:12]}"
        source = rtc.AudioSource(self.sample_rate, self.num_channels)
        track = rtc.LocalAudioTrack.create_audio_track(name, source)
        capture = MicrophoneCapture(
            sample_rate=self.sample_rate,
            num_channels=self.num_channels,
            device=self.device,
        )
        return LiveKitLocalAudioTrack(name, track, source, capture)


class LiveKitRemoteAudioTrack(RemoteAudioTrack):
    """Subscribed remote LiveKit audio played through an :class:`AudioPlayer`."""

    def __init__(self, track: rtc.RemoteAudioTrack, sample_rate: int = 48000) -> None:
        self._track = track
        self._sample_rate = sample_rate
        self._player: AudioPlayer | None = None
        self._play_task: asyncio.Task[None] | None = None

    @property
    def track_id(self) -> str:
        return self._track.sid

    @property
    def is_playing(self) -> bool:
        return self._play_task is not None and not self._play_task.done()

    def play(self) -> None:
        if self.is_playing:
            return
        self._player = AudioPlayer(sample_rate=self._sample_rate, num_channels=1)
        self._play_task = asyncio.create_task(self._play_loop(self._player))

    async def _play_loop(self, player: AudioPlayer) -> None:
        stream = rtc.AudioStream(self._track, sample_rate=self._sample_rate, num_channels=1)
        try:
            async for event in stream:
                player.play_frame(bytes(event.frame.data))
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                "Remote audio playback failed",
                extra={"track_id": self.track_id, "error": str(e)},
            )
        finally:
            await stream.aclose()
            player.close()

    def stop(self) -> None:
        if self._play_task is not None:
            self._play_task.cancel()
            self._play_task = None


class LiveKitRemoteUser(RemoteUser):
    """Remote LiveKit participant."""

    def __init__(self, participant: rtc.RemoteParticipant, transport: "LiveKitRtcTransport") -> None:
        self._participant = participant
        self._transport = transport

    @property
    def participant(self) -> rtc.RemoteParticipant:
        return self._participant

    @property
    def uid(self) -> int:
        return identity_to_uid(self._participant.identity)

    def audio_publication(self) -> rtc.RemoteTrackPublication | None:
        for publication in self._participant.track_publications.values():
            if publication.kind == rtc.TrackKind.KIND_AUDIO:
                return publication
        return None

    @property
    def has_audio(self) -> bool:
        return self.audio_publication() is not None

    @property
    def audio_track(self) -> RemoteAudioTrack | None:
        publication = self.audio_publication()
        if publication is None or publication.track is None:
            return None
        return self._transport.wrap_remote_track(publication.track)


class LiveKitRtcTransport(RtcTransport):
    """LiveKit room as a real-time channel transport.

    Auto-subscribe is disabled; remote audio is subscribed explicitly by the
    participant tracker.
    """

    def __init__(self, url: str, sample_rate: int = 48000) -> None:
        """Initialize LiveKit transport.

        Args:
            url: LiveKit server URL
            sample_rate: Playback sample rate for remote audio
        """
        super().__init__()
        self._url = url
        self._sample_rate = sample_rate
        self._room: rtc.Room | None = None
        self._publications: dict[str, str] = {}
        self._remote_tracks: dict[str, LiveKitRemoteAudioTrack] = {}
        self._subscribe_waiters: dict[str, asyncio.Future[rtc.Track]] = {}

    @property
    def is_connected(self) -> bool:
        return (
            self._room is not None
            and self._room.connection_state == rtc.ConnectionState.CONN_CONNECTED
        )

    @property
    def remote_users(self) -> list[RemoteUser]:
        if self._room is None:
            return []
        return [LiveKitRemoteUser(p, self) for p in self._room.remote_participants.values()]

    @property
    def published_track_ids(self) -> set[str]:
        return set(self._publications)

    def wrap_remote_track(self, track: rtc.Track) -> LiveKitRemoteAudioTrack:
        """Return the single wrapper for a remote track sid."""
        wrapper = self._remote_tracks.get(track.sid)
        if wrapper is None:
            wrapper = LiveKitRemoteAudioTrack(track, sample_rate=self._sample_rate)  # type: ignore[arg-type]
            self._remote_tracks[track.sid] = wrapper
        return wrapper

    def _register_handlers(self, room: rtc.Room) -> None:
        def on_participant_connected(participant: rtc.RemoteParticipant) -> None:
            self._emit(TransportEvent.PARTICIPANT_JOINED, LiveKitRemoteUser(participant, self))

        def on_participant_disconnected(participant: rtc.RemoteParticipant) -> None:
            self._emit(TransportEvent.PARTICIPANT_LEFT, LiveKitRemoteUser(participant, self))

        def on_track_published(
            publication: rtc.RemoteTrackPublication, participant: rtc.RemoteParticipant
        ) -> None:
            if publication.kind == rtc.TrackKind.KIND_AUDIO:
                self._emit(
                    TransportEvent.PARTICIPANT_PUBLISHED,
                    LiveKitRemoteUser(participant, self),
                    MediaKind.AUDIO,
                )

        def on_track_unpublished(
            publication: rtc.RemoteTrackPublication, participant: rtc.RemoteParticipant
        ) -> None:
            if publication.kind == rtc.TrackKind.KIND_AUDIO:
                if publication.track is not None:
                    self._remote_tracks.pop(publication.track.sid, None)
                self._emit(
                    TransportEvent.PARTICIPANT_UNPUBLISHED,
                    LiveKitRemoteUser(participant, self),
                    MediaKind.AUDIO,
                )

        def on_track_subscribed(
            track: rtc.Track,
            publication: rtc.RemoteTrackPublication,
            participant: rtc.RemoteParticipant,
        ) -> None:
            waiter = self._subscribe_waiters.pop(publication.sid, None)
            if waiter is not None and not waiter.done():
                waiter.set_result(track)

        room.on("participant_connected", on_participant_connected)
        room.on("participant_disconnected", on_participant_disconnected)
        room.on("track_published", on_track_published)
        room.on("track_unpublished", on_track_unpublished)
        room.on("track_subscribed", on_track_subscribed)

    async def join(self, app_id: str, channel: str, token: str, uid: int) -> None:
        room = rtc.Room()
        self._register_handlers(room)

        logger.info(
            "Connecting to LiveKit room",
            extra={"url": self._url, "app_id": app_id, "room": channel, "uid": uid},
        )
        await room.connect(self._url, token, options=rtc.RoomOptions(auto_subscribe=False))
        self._room = room

    async def leave(self) -> None:
        room = self._room
        self._room = None
        self._publications.clear()
        for wrapper in self._remote_tracks.values():
            wrapper.stop()
        self._remote_tracks.clear()
        for waiter in self._subscribe_waiters.values():
            waiter.cancel()
        self._subscribe_waiters.clear()
        if room is not None:
            await room.disconnect()

    async def publish(self, track: LocalAudioTrack) -> None:
        if self._room is None:
            raise ConnectionError("LiveKit room is not connected")
        if not isinstance(track, LiveKitLocalAudioTrack):
            raise TypeError(f"Cannot publish {type(track).__name__} on LiveKit")

        publication = await self._room.local_participant.publish_track(
            track.rtc_track,
            rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE),
        )
        self._publications[track.track_id] = publication.sid

    async def unpublish(self, track: LocalAudioTrack) -> None:
        sid = self._publications.pop(track.track_id, None)
        if sid is None:
            raise ValueError(f"Track {track.track_id} is not published")
        if self._room is not None:
            await self._room.local_participant.unpublish_track(sid)

    async def subscribe(self, user: RemoteUser, kind: MediaKind) -> RemoteAudioTrack | None:
        if kind != MediaKind.AUDIO or not isinstance(user, LiveKitRemoteUser):
            return None

        publication = user.audio_publication()
        if publication is None:
            return None
        if publication.track is not None:
            return self.wrap_remote_track(publication.track)

        waiter = self._subscribe_waiters.get(publication.sid)
        if waiter is None:
            waiter = asyncio.get_running_loop().create_future()
            self._subscribe_waiters[publication.sid] = waiter
            publication.set_subscribed(True)

        try:
            track = await asyncio.wait_for(asyncio.shield(waiter), timeout=SUBSCRIBE_TIMEOUT_S)
        except TimeoutError as e:
            self._subscribe_waiters.pop(publication.sid, None)
            raise TimeoutError(
                f"Subscription to {publication.sid} not confirmed within {SUBSCRIBE_TIMEOUT_S}s"
            ) from e
        return self.wrap_remote_track(track)
