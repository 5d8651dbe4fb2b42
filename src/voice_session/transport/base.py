"""Base real-time transport abstraction.

Defines the capability the session controller consumes from the underlying
real-time transport: joining and leaving a channel, publishing the local
microphone track, subscribing to remote audio, a live list of remote users,
and participant events. Concrete implementations (LiveKit) adapt an SDK to
this interface; the controller never touches the SDK directly.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class MediaKind(Enum):
    """Kind of media carried by a track."""

    AUDIO = "audio"
    VIDEO = "video"


class TransportEvent(Enum):
    """Remote participant events emitted by a transport.

    Handler signatures:
    - PARTICIPANT_PUBLISHED: (user: RemoteUser, kind: MediaKind)
    - PARTICIPANT_UNPUBLISHED: (user: RemoteUser, kind: MediaKind)
    - PARTICIPANT_JOINED: (user: RemoteUser)
    - PARTICIPANT_LEFT: (user: RemoteUser)
    """

    PARTICIPANT_PUBLISHED = "participant-published"
    PARTICIPANT_UNPUBLISHED = "participant-unpublished"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"


EventHandler = Callable[..., Awaitable[None] | None]


class LocalAudioTrack(ABC):
    """Captured local audio stream bound to an input device."""

    @property
    @abstractmethod
    def track_id(self) -> str:
        """Transport-level track identity."""
        pass

    @abstractmethod
    async def set_enabled(self, enabled: bool) -> None:
        """Start or stop feeding captured audio into the track."""
        pass

    @abstractmethod
    async def set_muted(self, muted: bool) -> None:
        """Mute or unmute the track without releasing the device."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the capture device. Closing twice is a no-op."""
        pass


class RemoteAudioTrack(ABC):
    """Subscribed audio stream of a remote participant."""

    @property
    @abstractmethod
    def track_id(self) -> str:
        """Transport-level track identity."""
        pass

    @abstractmethod
    def play(self) -> None:
        """Start playback of the remote audio."""
        pass

    @abstractmethod
    def stop(self) -> None:
        """Stop playback of the remote audio."""
        pass


class RemoteUser(ABC):
    """Transport view of a remote participant."""

    @property
    @abstractmethod
    def uid(self) -> int:
        """Participant UID in ``[0, 65535]``."""
        pass

    @property
    @abstractmethod
    def has_audio(self) -> bool:
        """Whether the participant currently publishes audio."""
        pass

    @property
    @abstractmethod
    def audio_track(self) -> RemoteAudioTrack | None:
        """Subscribed audio track, if any."""
        pass


class AudioDevice(ABC):
    """Local capture device factory."""

    @abstractmethod
    async def check_permission(self) -> bool:
        """Check (or prompt for) microphone access.

        Returns:
            True when access is granted
        """
        pass

    @abstractmethod
    async def create_track(self) -> LocalAudioTrack:
        """Open the device and create a local audio track.

        Raises:
            MediaDeviceError: If the device is unavailable or busy
        """
        pass


class RtcTransport(ABC):
    """Real-time channel transport consumed by the session controller.

    Provides a small event emitter; subclasses call :meth:`_emit` from SDK
    callbacks and handlers registered with :meth:`on` run as tasks on the
    running event loop.
    """

    def __init__(self) -> None:
        self._handlers: dict[TransportEvent, list[EventHandler]] = {}
        self._pending: set[asyncio.Task[None]] = set()

    def on(self, event: TransportEvent, handler: EventHandler) -> None:
        """Register an event handler (sync or async)."""
        self._handlers.setdefault(event, []).append(handler)

    def off(self, event: TransportEvent, handler: EventHandler) -> None:
        """Unregister an event handler."""
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    async def dispatch(self, event: TransportEvent, *args: Any) -> None:
        """Run every handler of ``event`` in registration order.

        Handler failures are logged and do not stop later handlers.
        """
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(
                    "Transport event handler failed",
                    extra={"event": event.value, "error": str(e)},
                )

    def _emit(self, event: TransportEvent, *args: Any) -> None:
        """Schedule handlers of ``event`` from a synchronous SDK callback."""
        task = asyncio.get_running_loop().create_task(self.dispatch(event, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the transport is currently joined to a channel."""
        pass

    @property
    @abstractmethod
    def remote_users(self) -> list[RemoteUser]:
        """Live list of currently known remote participants."""
        pass

    @property
    @abstractmethod
    def published_track_ids(self) -> set[str]:
        """Identities of local tracks currently published."""
        pass

    @abstractmethod
    async def join(self, app_id: str, channel: str, token: str, uid: int) -> None:
        """Join ``channel`` as ``uid``.

        Raises:
            Exception: Any SDK failure; the channel connector wraps it
        """
        pass

    @abstractmethod
    async def leave(self) -> None:
        """Leave the current channel."""
        pass

    @abstractmethod
    async def publish(self, track: LocalAudioTrack) -> None:
        """Publish a local track on the joined channel."""
        pass

    @abstractmethod
    async def unpublish(self, track: LocalAudioTrack) -> None:
        """Unpublish a local track."""
        pass

    @abstractmethod
    async def subscribe(self, user: RemoteUser, kind: MediaKind) -> RemoteAudioTrack | None:
        """Subscribe to a remote user's media and return the resulting track."""
        pass
