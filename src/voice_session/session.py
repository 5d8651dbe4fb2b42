"""Session lifecycle controller.

Sequences agent acquisition, token retrieval, channel join, microphone
publish and remote audio tracking, and tears everything down on stop. It is
the only component that knows the full lifecycle and the only writer of the
session state and the conversation log.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from src.voice_session.agent_client import AgentControlClient
from src.voice_session.channel import ChannelConnector
from src.voice_session.config import ClientConfig
from src.voice_session.conversation import ConversationLog, Sender
from src.voice_session.errors import DevicePermissionError, MediaDeviceError, TransportError
from src.voice_session.media import LocalTrackHandle, MediaTrackManager
from src.voice_session.remote import RemoteParticipantTracker
from src.voice_session.transport.base import AudioDevice, RtcTransport
from src.voice_session.uid import make_rtc_uid

logger = logging.getLogger(__name__)

SPEAKING_NOTICE = "AI is speaking this message in the voice channel…"


class Phase(Enum):
    """Session controller phases.

    Phase Transitions:
    - IDLE → STARTING_AGENT (on start request)
    - STARTING_AGENT → FETCHING_TOKEN (agent acquired)
    - FETCHING_TOKEN → JOINING (token issued)
    - JOINING → CONNECTED (channel joined; a failed join stays in JOINING)
    - CONNECTED → PUBLISHING → ACTIVE (microphone published)
    - PUBLISHING → CONNECTED (publish failed)
    - ACTIVE → CONNECTED (microphone released)
    - STARTING_AGENT/FETCHING_TOKEN → IDLE (start failure)
    - any non-idle → STOPPING → IDLE (on stop request)
    """

    IDLE = "idle"
    STARTING_AGENT = "starting_agent"
    FETCHING_TOKEN = "fetching_token"
    JOINING = "joining"
    CONNECTED = "connected"
    PUBLISHING = "publishing"
    ACTIVE = "active"
    STOPPING = "stopping"


VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.IDLE: {Phase.STARTING_AGENT},
    Phase.STARTING_AGENT: {Phase.FETCHING_TOKEN, Phase.IDLE, Phase.STOPPING},
    Phase.FETCHING_TOKEN: {Phase.JOINING, Phase.IDLE, Phase.STOPPING},
    Phase.JOINING: {Phase.CONNECTED, Phase.STOPPING},
    Phase.CONNECTED: {Phase.PUBLISHING, Phase.STOPPING},
    Phase.PUBLISHING: {Phase.ACTIVE, Phase.CONNECTED, Phase.STOPPING},
    Phase.ACTIVE: {Phase.CONNECTED, Phase.STOPPING},
    Phase.STOPPING: {Phase.IDLE},
}


@dataclass
class SessionState:
    """Controller-owned session state.

    ``publish_in_progress`` and ``published_track_id`` guard publishing so
    that a track is published at most once per connected session and a stop
    arriving mid-publish unpublishes after the publish completes.
    """

    phase: Phase = Phase.IDLE
    channel_name: str | None = None
    rtc_uid: int | None = None
    rtc_token: str | None = None
    agent_id: str | None = None
    mic_enabled: bool = True
    connected: bool = False
    publish_in_progress: bool = False
    published_track_id: str | None = None


class SessionController:
    """Orchestrates a single agent voice session."""

    def __init__(
        self,
        config: ClientConfig,
        client: AgentControlClient,
        transport: RtcTransport,
        device: AudioDevice,
        log: ConversationLog | None = None,
    ) -> None:
        """Initialize session controller.

        Args:
            config: Client configuration
            client: Agent backend client
            transport: Real-time channel transport
            device: Microphone device factory
            log: Conversation log (a new one is created if omitted)
        """
        self._config = config
        self._client = client
        self._transport = transport
        self.log = log if log is not None else ConversationLog()

        self._media = MediaTrackManager(device, release_on_disable=config.media.release_on_disable)
        self._channel = ChannelConnector(transport)
        self._tracker = RemoteParticipantTracker(
            transport, interval_s=config.rtc.reconcile_interval_ms / 1000.0
        )

        self._default_uid = make_rtc_uid()
        self._state = SessionState(mic_enabled=config.media.mic_enabled)

        # Incremented by start and stop; stale start sequences bail out
        self._run_id = 0
        self._publish_idle = asyncio.Event()
        self._publish_idle.set()
        self._stopped = asyncio.Event()
        self._stopped.set()

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def media(self) -> MediaTrackManager:
        return self._media

    @property
    def tracker(self) -> RemoteParticipantTracker:
        return self._tracker

    @property
    def default_uid(self) -> int:
        return self._default_uid

    def snapshot(self) -> SessionState:
        """Return a copy of the current session state."""
        return replace(self._state)

    def transition_phase(self, new_phase: Phase) -> None:
        """Transition to a new phase with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_phase not in VALID_TRANSITIONS.get(self._state.phase, set()):
            raise ValueError(
                f"Invalid phase transition: {self._state.phase.value} → {new_phase.value}"
            )

        old_phase = self._state.phase
        self._state.phase = new_phase

        logger.info(
            "Session phase transition",
            extra={
                "agent_id": self._state.agent_id,
                "from_phase": old_phase.value,
                "to_phase": new_phase.value,
            },
        )

    def _is_current(self, run_id: int) -> bool:
        return run_id == self._run_id

    def _reset_state(self) -> None:
        self._state = SessionState(mic_enabled=self._state.mic_enabled)

    def _fail_start(self, error: Exception) -> None:
        logger.error(
            "Error starting agent",
            extra={"phase": self._state.phase.value, "error": str(error)},
        )
        self.log.system(f"Failed to start agent: {error}")
        self.transition_phase(Phase.IDLE)
        self._reset_state()

    async def start(self) -> bool:
        """Acquire an agent, fetch a token, load history and join the channel.

        Returns:
            True if the sequence reached the join step
        """
        if self._state.phase != Phase.IDLE:
            logger.warning("Start ignored, session busy", extra={"phase": self._state.phase.value})
            return False

        self._run_id += 1
        run_id = self._run_id
        self.log.clear()
        self._reset_state()
        self.transition_phase(Phase.STARTING_AGENT)

        try:
            agent = await self._client.start_agent(default_uid=self._default_uid)
        except Exception as e:
            if self._is_current(run_id):
                self._fail_start(e)
            return False

        if not self._is_current(run_id):
            logger.info("Agent acquired after stop, releasing", extra={"agent_id": agent.agent_id})
            await self._client.stop_agent(agent.agent_id)
            return False

        self._state.agent_id = agent.agent_id
        verb = "created" if agent.is_new else "reused"
        self.log.system(f"Agent {agent.agent_id} {verb} on channel {agent.channel_name}")
        self.transition_phase(Phase.FETCHING_TOKEN)

        try:
            token = await self._client.fetch_token(agent.rtc_uid)
        except Exception as e:
            # The agent stays up server-side; only local state is reset
            if self._is_current(run_id):
                self._fail_start(e)
            return False

        if not self._is_current(run_id):
            return False

        self._state.rtc_token = token.token
        self._state.channel_name = agent.channel_name or token.channel_name
        self._state.rtc_uid = token.rtc_uid
        self.transition_phase(Phase.JOINING)

        await self._load_history(agent.agent_id)
        if not self._is_current(run_id):
            return False

        await self._join()
        return True

    async def rejoin(self) -> bool:
        """Retry joining after a failed join. No-op in any other phase."""
        if self._state.phase != Phase.JOINING or self._state.connected:
            return False
        return await self._join()

    async def _join(self) -> bool:
        channel = self._state.channel_name
        token = self._state.rtc_token
        uid = self._state.rtc_uid
        if not channel or not token or uid is None:
            return False

        run_id = self._run_id
        self._tracker.attach()
        try:
            await self._channel.join(self._config.rtc.app_id, channel, token, uid)
        except TransportError as e:
            self._state.connected = False
            self.log.system(f"Join failed: {e}")
            return False

        if not self._is_current(run_id):
            # Stopped while the join was in flight
            await self._channel.leave()
            return False

        self._state.connected = True
        self.transition_phase(Phase.CONNECTED)
        self._tracker.start_reconciliation()

        if self._state.mic_enabled:
            await self._acquire_microphone()
        await self._publish_if_ready()
        return True

    async def _acquire_microphone(self) -> LocalTrackHandle | None:
        run_id = self._run_id
        try:
            return await self._media.set_microphone_enabled(True)
        except (DevicePermissionError, MediaDeviceError) as e:
            logger.warning("Microphone unavailable", extra={"error": str(e)})
            if not self._is_current(run_id):
                # Stopped while the device was opening; state belongs to the next run
                return None
            self.log.system(f"Mic error: {e}")
            self._state.mic_enabled = False
            return None

    async def _publish_if_ready(self) -> bool:
        """Publish the active local track once per connected session."""
        handle = self._media.handle
        if (
            not self._state.connected
            or self._state.phase != Phase.CONNECTED
            or self._state.publish_in_progress
            or handle is None
            or not handle.is_active
            or handle.track is None
            or self._state.published_track_id == handle.track_id
        ):
            return False

        self._state.publish_in_progress = True
        self._publish_idle.clear()
        self.transition_phase(Phase.PUBLISHING)
        try:
            await self._channel.publish(handle.track)
        except TransportError as e:
            self.log.system(f"Publish failed: {e}")
            if self._state.phase == Phase.PUBLISHING:
                self.transition_phase(Phase.CONNECTED)
            return False
        else:
            self._state.published_track_id = handle.track_id
            if self._state.phase == Phase.PUBLISHING:
                self.transition_phase(Phase.ACTIVE)
            return True
        finally:
            self._state.publish_in_progress = False
            self._publish_idle.set()

    async def set_microphone_enabled(self, enabled: bool) -> None:
        """Turn the microphone on or off.

        While not connected only the preference is recorded; the track is
        acquired once the channel is joined.
        """
        if self._state.phase == Phase.STOPPING:
            return

        self._state.mic_enabled = enabled

        if enabled:
            if not self._state.connected:
                return
            await self._acquire_microphone()
            await self._publish_if_ready()
            return

        await self._publish_idle.wait()
        handle = self._media.handle
        if (
            handle is not None
            and handle.track is not None
            and self._media.release_on_disable
            and self._state.published_track_id == handle.track_id
        ):
            await self._channel.unpublish(handle.track)
            self._state.published_track_id = None
            if self._state.phase == Phase.ACTIVE:
                self.transition_phase(Phase.CONNECTED)

        try:
            await self._media.set_microphone_enabled(False)
        except Exception as e:
            logger.warning("Error disabling microphone", extra={"error": str(e)})

    async def toggle_microphone(self) -> bool:
        """Flip the microphone preference and return the new value."""
        await self.set_microphone_enabled(not self._state.mic_enabled)
        return self._state.mic_enabled

    async def send_text(self, text: str) -> bool:
        """Ask the agent to speak ``text``. Ignored without an agent or text."""
        agent_id = self._state.agent_id
        text = text.strip()
        if not agent_id or not text:
            return False

        self.log.add(Sender.USER, text)
        try:
            await self._client.send_text(agent_id, text)
        except Exception as e:
            logger.error("Send text failed", extra={"agent_id": agent_id, "error": str(e)})
            self.log.system(f"Failed to send text: {e}")
            return False

        self.log.system(SPEAKING_NOTICE)
        return True

    async def refresh_history(self) -> int:
        """Append the agent's history to the log. No-op without an agent."""
        agent_id = self._state.agent_id
        if not agent_id:
            return 0
        return await self._load_history(agent_id)

    async def _load_history(self, agent_id: str) -> int:
        try:
            entries = await self._client.fetch_history(agent_id)
        except Exception as e:
            logger.error("Unable to load history", extra={"agent_id": agent_id, "error": str(e)})
            self.log.system(f"History failed: {e}")
            return 0

        if self._state.agent_id != agent_id:
            return 0

        self.log.extend([entry.to_message() for entry in entries])
        return len(entries)

    async def stop(self) -> None:
        """Tear the session down from any phase. No-op when idle."""
        if self._state.phase == Phase.STOPPING:
            await self._stopped.wait()
            return

        if self._state.phase == Phase.IDLE and self._state.agent_id is None:
            return

        self._run_id += 1
        self._stopped.clear()
        agent_id = self._state.agent_id
        self.transition_phase(Phase.STOPPING)

        try:
            # Let an in-flight publish land so its unpublish is not lost
            await self._publish_idle.wait()

            handle = self._media.handle
            if handle is not None and handle.track is not None and self._state.published_track_id:
                await self._channel.unpublish(handle.track)
            await self._channel.leave()

            if agent_id:
                try:
                    await self._client.stop_agent(agent_id)
                except Exception as e:
                    logger.warning("Stop agent failed", extra={"agent_id": agent_id, "error": str(e)})

            self._media.close()

            self._tracker.detach()
            await self._tracker.stop_reconciliation()
            self._tracker.clear()
        finally:
            self.log.clear()
            self.transition_phase(Phase.IDLE)
            self._state = SessionState(mic_enabled=self._config.media.mic_enabled)
            self._stopped.set()
            logger.info("Agent stopped", extra={"agent_id": agent_id})

    def summary(self) -> dict[str, Any]:
        """Get session summary for logging/monitoring."""
        handle = self._media.handle
        return {
            "phase": self._state.phase.value,
            "agent_id": self._state.agent_id,
            "channel": self._state.channel_name,
            "uid": self._state.rtc_uid,
            "connected": self._state.connected,
            "mic_enabled": self._state.mic_enabled,
            "mic_state": self._media.state.value,
            "published_track_id": self._state.published_track_id,
            "local_track_id": handle.track_id if handle else None,
            "remote_participants": sorted(self._tracker.participants),
            "remote_tracks": len(self._tracker.tracks),
            "messages": len(self.log),
        }
