"""Unit tests for LiveKit transport implementation.

Tests LiveKitRtcTransport and its track wrappers with mocked LiveKit SDK
objects to verify join/leave, publishing, manual subscription and events.
"""

import asyncio
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, Mock, patch

import pytest
from livekit import rtc

from src.voice_session.audio.capture import MicrophoneCapture
from src.voice_session.transport.base import MediaKind, TransportEvent
from src.voice_session.transport.livekit_transport import (
    LiveKitLocalAudioTrack,
    LiveKitRemoteAudioTrack,
    LiveKitRemoteUser,
    LiveKitRtcTransport,
    identity_to_uid,
)


@pytest.fixture
def mock_room() -> Mock:
    """Create mock LiveKit Room."""
    room = Mock(spec=rtc.Room)
    room.connection_state = rtc.ConnectionState.CONN_CONNECTED
    room.local_participant = Mock()
    room.local_participant.publish_track = AsyncMock(return_value=Mock(sid="TR_local"))
    room.local_participant.unpublish_track = AsyncMock()
    room.remote_participants = {}
    room.disconnect = AsyncMock()
    room.connect = AsyncMock()
    room.on = Mock()
    return room


@pytest.fixture
async def joined(mock_room: Mock) -> LiveKitRtcTransport:
    """Transport joined to the mock room."""
    transport = LiveKitRtcTransport(url="ws://localhost:7880")
    with patch(
        "src.voice_session.transport.livekit_transport.rtc.Room", return_value=mock_room
    ):
        await transport.join("app", "c1", "tok", 42)
    return transport


def room_handlers(room: Mock) -> dict[str, Callable[..., Any]]:
    return {call.args[0]: call.args[1] for call in room.on.call_args_list}


def make_local_track(name: str = "mic-test") -> LiveKitLocalAudioTrack:
    return LiveKitLocalAudioTrack(
        name, Mock(spec=rtc.LocalAudioTrack), Mock(), Mock(spec=MicrophoneCapture)
    )


def make_participant(identity: str, publication: Mock | None = None) -> Mock:
    participant = Mock(spec=rtc.RemoteParticipant)
    participant.identity = identity
    participant.track_publications = {publication.sid: publication} if publication else {}
    return participant


def make_publication(sid: str = "TR_remote", track: Mock | None = None) -> Mock:
    publication = Mock()
    publication.sid = sid
    publication.kind = rtc.TrackKind.KIND_AUDIO
    publication.track = track
    return publication


class TestIdentityToUid:
    """Test suite for identity mapping."""

    def test_numeric_identity(self) -> None:
        assert identity_to_uid("42") == 42
        assert identity_to_uid("65535") == 65535

    def test_non_numeric_identity_is_stable(self) -> None:
        uid = identity_to_uid("agent-bot")
        assert 0 <= uid <= 65535
        assert identity_to_uid("agent-bot") == uid

    def test_out_of_range_identity_hashed(self) -> None:
        assert 0 <= identity_to_uid("70000") <= 65535


class TestJoinLeave:
    """Test suite for room membership."""

    async def test_join_connects_without_auto_subscribe(
        self, joined: LiveKitRtcTransport, mock_room: Mock
    ) -> None:
        mock_room.connect.assert_awaited_once()
        args, kwargs = mock_room.connect.call_args
        assert args == ("ws://localhost:7880", "tok")
        assert kwargs["options"].auto_subscribe is False
        assert joined.is_connected
        assert set(room_handlers(mock_room)) == {
            "participant_connected",
            "participant_disconnected",
            "track_published",
            "track_unpublished",
            "track_subscribed",
        }

    async def test_not_connected_before_join(self) -> None:
        transport = LiveKitRtcTransport(url="ws://localhost:7880")
        assert not transport.is_connected
        assert transport.remote_users == []

    async def test_leave_disconnects(self, joined: LiveKitRtcTransport, mock_room: Mock) -> None:
        await joined.leave()

        mock_room.disconnect.assert_awaited_once()
        assert not joined.is_connected
        assert joined.published_track_ids == set()

    async def test_remote_users(self, joined: LiveKitRtcTransport, mock_room: Mock) -> None:
        publication = make_publication()
        mock_room.remote_participants = {
            "p1": make_participant("7", publication),
            "p2": make_participant("8"),
        }

        users = {user.uid: user for user in joined.remote_users}

        assert set(users) == {7, 8}
        assert users[7].has_audio
        assert not users[8].has_audio
        assert users[7].audio_track is None


class TestPublish:
    """Test suite for local track publishing."""

    async def test_publish_and_unpublish(
        self, joined: LiveKitRtcTransport, mock_room: Mock
    ) -> None:
        track = make_local_track()

        await joined.publish(track)
        assert joined.published_track_ids == {"mic-test"}
        mock_room.local_participant.publish_track.assert_awaited_once()

        await joined.unpublish(track)
        mock_room.local_participant.unpublish_track.assert_awaited_once_with("TR_local")
        assert joined.published_track_ids == set()

    async def test_unpublish_unknown_track(self, joined: LiveKitRtcTransport) -> None:
        with pytest.raises(ValueError, match="not published"):
            await joined.unpublish(make_local_track())

    async def test_publish_before_join(self) -> None:
        transport = LiveKitRtcTransport(url="ws://localhost:7880")
        with pytest.raises(ConnectionError):
            await transport.publish(make_local_track())


class TestSubscribe:
    """Test suite for manual remote audio subscription."""

    async def test_subscribe_waits_for_track(
        self, joined: LiveKitRtcTransport, mock_room: Mock
    ) -> None:
        publication = make_publication()
        participant = make_participant("99", publication)
        user = LiveKitRemoteUser(participant, joined)

        subscribing = asyncio.create_task(joined.subscribe(user, MediaKind.AUDIO))
        await asyncio.sleep(0)
        publication.set_subscribed.assert_called_once_with(True)

        remote_track = Mock(spec=rtc.RemoteAudioTrack)
        remote_track.sid = "TR_remote"
        room_handlers(mock_room)["track_subscribed"](remote_track, publication, participant)

        result = await subscribing
        assert isinstance(result, LiveKitRemoteAudioTrack)
        assert result.track_id == "TR_remote"

    async def test_subscribe_already_subscribed(self, joined: LiveKitRtcTransport) -> None:
        remote_track = Mock(spec=rtc.RemoteAudioTrack)
        remote_track.sid = "TR_remote"
        publication = make_publication(track=remote_track)
        user = LiveKitRemoteUser(make_participant("99", publication), joined)

        first = await joined.subscribe(user, MediaKind.AUDIO)
        second = await joined.subscribe(user, MediaKind.AUDIO)

        assert first is second
        publication.set_subscribed.assert_not_called()

    async def test_subscribe_video_ignored(self, joined: LiveKitRtcTransport) -> None:
        user = LiveKitRemoteUser(make_participant("99", make_publication()), joined)
        assert await joined.subscribe(user, MediaKind.VIDEO) is None

    async def test_subscribe_timeout(self, joined: LiveKitRtcTransport) -> None:
        user = LiveKitRemoteUser(make_participant("99", make_publication()), joined)

        with patch("src.voice_session.transport.livekit_transport.SUBSCRIBE_TIMEOUT_S", 0.01):
            with pytest.raises(TimeoutError, match="not confirmed"):
                await joined.subscribe(user, MediaKind.AUDIO)


class TestEvents:
    """Test suite for room event mapping."""

    async def test_track_published_emits_event(
        self, joined: LiveKitRtcTransport, mock_room: Mock
    ) -> None:
        received: list[tuple[int, MediaKind]] = []
        done = asyncio.Event()

        async def handler(user: LiveKitRemoteUser, kind: MediaKind) -> None:
            received.append((user.uid, kind))
            done.set()

        joined.on(TransportEvent.PARTICIPANT_PUBLISHED, handler)
        publication = make_publication()
        room_handlers(mock_room)["track_published"](publication, make_participant("99", publication))

        await asyncio.wait_for(done.wait(), timeout=1.0)
        assert received == [(99, MediaKind.AUDIO)]

    async def test_participant_disconnected_emits_left(
        self, joined: LiveKitRtcTransport, mock_room: Mock
    ) -> None:
        done = asyncio.Event()
        joined.on(TransportEvent.PARTICIPANT_LEFT, lambda user: done.set())

        room_handlers(mock_room)["participant_disconnected"](make_participant("5"))

        await asyncio.wait_for(done.wait(), timeout=1.0)


class TestLocalTrack:
    """Test suite for the microphone track wrapper."""

    async def test_mute_and_unmute(self) -> None:
        track = make_local_track()

        await track.set_muted(True)
        await track.set_muted(False)

        track.rtc_track.mute.assert_called_once()  # type: ignore[attr-defined]
        track.rtc_track.unmute.assert_called_once()  # type: ignore[attr-defined]

    def test_close_is_idempotent(self) -> None:
        capture = Mock(spec=MicrophoneCapture)
        track = LiveKitLocalAudioTrack("mic-test", Mock(), Mock(), capture)

        track.close()
        track.close()

        capture.stop.assert_called_once()
