"""Idempotent channel join/leave and track publish/unpublish."""

import logging

from src.voice_session.errors import TransportError
from src.voice_session.transport.base import LocalAudioTrack, RtcTransport

logger = logging.getLogger(__name__)


class ChannelConnector:
    """Wraps channel membership and publishing against a transport.

    Every operation is safe to repeat: joining while connected, publishing an
    already published track, unpublishing a track that is not published and
    leaving while disconnected are all no-ops.
    """

    def __init__(self, transport: RtcTransport) -> None:
        self._transport = transport
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def join(self, app_id: str, channel: str, token: str, uid: int) -> bool:
        """Join a channel unless the transport is already connected.

        Args:
            app_id: Application identifier
            channel: Channel name
            token: Channel access token
            uid: Local UID

        Returns:
            True if a join was performed, False if already connected

        Raises:
            TransportError: If the join failed
        """
        if self._transport.is_connected:
            self._connected = True
            logger.debug("Join skipped, transport already connected", extra={"channel": channel})
            return False

        try:
            await self._transport.join(app_id, channel, token, uid)
        except Exception as e:
            self._connected = False
            logger.error(
                "Channel join failed",
                extra={"channel": channel, "uid": uid, "error": str(e)},
            )
            raise TransportError(f"Failed to join channel '{channel}': {e}") from e

        self._connected = True
        logger.info("Joined channel", extra={"channel": channel, "uid": uid})
        return True

    async def publish(self, track: LocalAudioTrack) -> bool:
        """Publish a local track unless it is already published.

        Returns:
            True if a publish was performed, False if already published

        Raises:
            TransportError: If publishing failed
        """
        if track.track_id in self._transport.published_track_ids:
            logger.debug("Publish skipped, track already published", extra={"track_id": track.track_id})
            return False

        try:
            await self._transport.publish(track)
        except Exception as e:
            logger.error(
                "Track publish failed",
                extra={"track_id": track.track_id, "error": str(e)},
            )
            raise TransportError(f"Failed to publish track: {e}") from e

        logger.info("Local track published", extra={"track_id": track.track_id})
        return True

    async def unpublish(self, track: LocalAudioTrack) -> bool:
        """Unpublish a local track. Errors are logged and swallowed.

        Returns:
            True if the transport unpublished the track
        """
        if track.track_id not in self._transport.published_track_ids:
            return False

        try:
            await self._transport.unpublish(track)
        except Exception as e:
            logger.warning(
                "Track unpublish failed",
                extra={"track_id": track.track_id, "error": str(e)},
            )
            return False

        logger.info("Local track unpublished", extra={"track_id": track.track_id})
        return True

    async def leave(self) -> None:
        """Leave the channel. Idempotent; errors are logged and swallowed."""
        if not self._connected and not self._transport.is_connected:
            return

        try:
            await self._transport.leave()
        except Exception as e:
            logger.warning("Error leaving channel", extra={"error": str(e)})
        finally:
            self._connected = False

        logger.info("Left channel")
