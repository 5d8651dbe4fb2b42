"""Remote participant and audio track tracking.

Two producers feed the same idempotent upsert:

- Transport events (published/unpublished/joined/left), which may arrive
  late, twice, or not at all.
- A periodic reconciliation pass over the transport's live remote user
  list, which only adds and never removes.

Participants are keyed by UID and tracks by transport track identity, so
repeated observations of the same fact never create a second entry or a
second ``play()`` call regardless of arrival order.
"""

import asyncio
import logging
from dataclasses import dataclass

from src.voice_session.transport.base import (
    MediaKind,
    RemoteAudioTrack,
    RemoteUser,
    RtcTransport,
    TransportEvent,
)

logger = logging.getLogger(__name__)


@dataclass
class RemoteParticipant:
    """Tracked remote participant."""

    uid: int
    has_audio: bool = False
    audio_track: RemoteAudioTrack | None = None


class RemoteParticipantTracker:
    """Maintains remote participants and their playing audio tracks."""

    def __init__(self, transport: RtcTransport, interval_s: float = 0.5) -> None:
        """Initialize tracker.

        Args:
            transport: Transport to observe
            interval_s: Reconciliation pass interval in seconds
        """
        self._transport = transport
        self._interval_s = interval_s
        self._participants: dict[int, RemoteParticipant] = {}
        self._tracks: dict[str, RemoteAudioTrack] = {}
        self._track_owners: dict[str, int] = {}
        self._reconcile_task: asyncio.Task[None] | None = None
        self._subscribed = False
        # Bumped by detach/clear, and per uid by a track-dropping remove, so a
        # subscription that resolves afterwards is discarded
        self._generation = 0
        self._uid_generations: dict[int, int] = {}

    @property
    def participants(self) -> dict[int, RemoteParticipant]:
        """Snapshot of tracked participants keyed by UID."""
        return dict(self._participants)

    @property
    def tracks(self) -> dict[str, RemoteAudioTrack]:
        """Snapshot of playing tracks keyed by track identity."""
        return dict(self._tracks)

    @property
    def is_running(self) -> bool:
        return self._reconcile_task is not None and not self._reconcile_task.done()

    def attach(self) -> None:
        """Register transport event handlers. Idempotent."""
        if self._subscribed:
            return
        self._transport.on(TransportEvent.PARTICIPANT_PUBLISHED, self.on_published)
        self._transport.on(TransportEvent.PARTICIPANT_UNPUBLISHED, self.on_unpublished)
        self._transport.on(TransportEvent.PARTICIPANT_JOINED, self.on_joined)
        self._transport.on(TransportEvent.PARTICIPANT_LEFT, self.on_left)
        self._subscribed = True

    def detach(self) -> None:
        """Unregister transport event handlers. Idempotent."""
        self._generation += 1
        if not self._subscribed:
            return
        self._transport.off(TransportEvent.PARTICIPANT_PUBLISHED, self.on_published)
        self._transport.off(TransportEvent.PARTICIPANT_UNPUBLISHED, self.on_unpublished)
        self._transport.off(TransportEvent.PARTICIPANT_JOINED, self.on_joined)
        self._transport.off(TransportEvent.PARTICIPANT_LEFT, self.on_left)
        self._subscribed = False

    def start_reconciliation(self) -> None:
        """Start the periodic reconciliation pass. Idempotent."""
        if self.is_running:
            return
        self._reconcile_task = asyncio.create_task(self._reconcile_loop())
        logger.debug("Remote reconciliation started", extra={"interval_s": self._interval_s})

    async def stop_reconciliation(self) -> None:
        """Cancel the reconciliation pass and wait for it to finish."""
        task = self._reconcile_task
        self._reconcile_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def upsert(
        self,
        uid: int,
        has_audio: bool | None = None,
        track: RemoteAudioTrack | None = None,
    ) -> RemoteParticipant:
        """Add or update a participant and, if new, start playing its track.

        Args:
            uid: Participant UID
            has_audio: New audio flag, or None to leave it unchanged
            track: Subscribed audio track, or None to leave tracks unchanged

        Returns:
            The participant entry for ``uid``
        """
        participant = self._participants.get(uid)
        if participant is None:
            participant = RemoteParticipant(uid=uid)
            self._participants[uid] = participant
            logger.info("Remote participant tracked", extra={"uid": uid})

        if has_audio is not None:
            participant.has_audio = has_audio

        if track is not None:
            participant.audio_track = track
            participant.has_audio = True
            if track.track_id not in self._tracks:
                try:
                    track.play()
                except Exception as e:
                    logger.error(
                        "Remote audio playback failed",
                        extra={"uid": uid, "track_id": track.track_id, "error": str(e)},
                    )
                    return participant
                self._tracks[track.track_id] = track
                self._track_owners[track.track_id] = uid
                logger.info(
                    "Playing remote audio track",
                    extra={"uid": uid, "track_id": track.track_id},
                )

        return participant

    def remove(self, uid: int, drop_tracks: bool = True) -> None:
        """Remove a participant and optionally every track it owns."""
        if self._participants.pop(uid, None) is not None:
            logger.info("Remote participant removed", extra={"uid": uid})

        if not drop_tracks:
            return

        self._uid_generations[uid] = self._uid_generations.get(uid, 0) + 1
        for track_id in [tid for tid, owner in self._track_owners.items() if owner == uid]:
            self._drop_track(track_id)

    def _drop_track(self, track_id: str) -> None:
        track = self._tracks.pop(track_id, None)
        self._track_owners.pop(track_id, None)
        if track is not None:
            self._stop_track(track)

    def _stop_track(self, track: RemoteAudioTrack) -> None:
        try:
            track.stop()
        except Exception as e:
            logger.warning(
                "Error stopping remote audio track",
                extra={"track_id": track.track_id, "error": str(e)},
            )

    def clear(self) -> None:
        """Stop every track and forget all participants."""
        self._generation += 1
        self._uid_generations.clear()
        for track_id in list(self._tracks):
            self._drop_track(track_id)
        self._participants.clear()

    async def on_published(self, user: RemoteUser, kind: MediaKind) -> None:
        """Subscribe to newly published audio."""
        if kind != MediaKind.AUDIO:
            return

        uid = user.uid
        generation = self._generation
        uid_generation = self._uid_generations.get(uid, 0)
        try:
            track = await self._transport.subscribe(user, kind)
        except Exception as e:
            logger.error(
                "Remote audio subscribe failed",
                extra={"uid": uid, "error": str(e)},
            )
            return

        if track is None:
            return

        if generation != self._generation or uid_generation != self._uid_generations.get(uid, 0):
            # Torn down or unpublished while subscribing
            if track.track_id not in self._tracks:
                self._stop_track(track)
            logger.info(
                "Discarding stale remote audio subscription",
                extra={"uid": uid, "track_id": track.track_id},
            )
            return

        self.upsert(uid, track=track)

    async def on_unpublished(self, user: RemoteUser, kind: MediaKind) -> None:
        if kind != MediaKind.AUDIO:
            return
        self.remove(user.uid, drop_tracks=True)

    async def on_joined(self, user: RemoteUser) -> None:
        self.upsert(user.uid)

    async def on_left(self, user: RemoteUser) -> None:
        # Membership only; tracks are released by the unpublished signal
        self.remove(user.uid, drop_tracks=False)

    def reconcile_once(self) -> None:
        """Add any remote user or playing track not yet tracked."""
        for user in self._transport.remote_users:
            track = user.audio_track if user.has_audio else None
            self.upsert(user.uid, has_audio=user.has_audio or None, track=track)

    async def _reconcile_loop(self) -> None:
        while True:
            try:
                self.reconcile_once()
            except Exception as e:
                logger.error("Remote reconciliation failed", extra={"error": str(e)})
            await asyncio.sleep(self._interval_s)
