"""Command-line client for agent voice sessions.

Starts (or reuses) a backend agent, joins its voice channel over LiveKit,
publishes the local microphone, plays the agent's replies, and lets the user
send text for the agent to speak.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from src.voice_session.agent_client import AgentControlClient
from src.voice_session.config import ClientConfig
from src.voice_session.conversation import ConversationMessage, Sender
from src.voice_session.session import SessionController
from src.voice_session.transport.livekit_transport import LiveKitMicrophone, LiveKitRtcTransport
from src.voice_session.utils.logging import setup_logging

logger = logging.getLogger(__name__)

HELP_TEXT = """
Commands:
  /start   - Start or reuse the agent and join its channel
  /stop    - Stop the agent and leave the channel
  /mic     - Toggle the microphone
  /history - Refresh conversation history
  /rejoin  - Retry joining the channel after a failure
  /status  - Show session status
  /quit    - Exit client
  /help    - Show this help

Any other input is sent to the agent to speak.
"""

SENDER_LABELS = {
    Sender.USER: "You",
    Sender.SYSTEM: "System",
    Sender.AGENT: "AI",
}


def format_message(message: ConversationMessage) -> str:
    """Render a conversation message as a single line."""
    label = SENDER_LABELS[message.sender]
    return f"[{message.timestamp.strftime('%H:%M:%S')}] {label}: {message.text}"


class CLIClient:
    """Interactive client driving a :class:`SessionController`."""

    def __init__(self, controller: SessionController) -> None:
        """Initialize CLI client.

        Args:
            controller: Session controller to drive
        """
        self.controller = controller
        self.running = True
        controller.log.add_listener(self.print_message)

    def print_message(self, message: ConversationMessage) -> None:
        print(format_message(message))

    def print_status(self) -> None:
        summary = self.controller.summary()
        print("\nSession status:")
        for key, value in summary.items():
            print(f"  {key}: {value}")
        print()

    async def handle_command(self, command: str) -> None:
        """Execute a slash command (without the leading slash)."""
        command = command.lower()

        if command == "quit":
            self.running = False
            print("\nGoodbye!")
        elif command == "help":
            print(HELP_TEXT)
        elif command == "start":
            await self.controller.start()
        elif command == "stop":
            await self.controller.stop()
            print("Agent stopped")
        elif command == "mic":
            enabled = await self.controller.toggle_microphone()
            print(f"Mic: {'On' if enabled else 'Off'}")
        elif command == "history":
            await self.controller.refresh_history()
        elif command == "rejoin":
            await self.controller.rejoin()
        elif command == "status":
            self.print_status()
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def handle_line(self, text: str) -> None:
        """Handle one line of user input."""
        text = text.strip()
        if not text:
            return

        if text.startswith("/"):
            await self.handle_command(text[1:])
            return

        if not await self.controller.send_text(text):
            if self.controller.snapshot().agent_id is None:
                print("No agent running. Use /start first.")

    async def input_loop(self) -> None:
        """Read user input from stdin until quit or EOF."""
        print("\n" + "=" * 60)
        print("Agent Voice Session Client")
        print("=" * 60)
        print(HELP_TEXT)

        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "> ")
            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break

            try:
                await self.handle_line(text)
            except Exception as e:
                logger.error(f"Input error: {e}")

    async def run(self) -> None:
        """Run the CLI client."""
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            self.running = False

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        try:
            await self.input_loop()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.controller.stop()


async def run_client(config: ClientConfig) -> None:
    """Build the session stack from ``config`` and run the CLI.

    Args:
        config: Loaded client configuration
    """
    if not config.api.access_token:
        logger.warning(
            "AGENT_USER_ACCESS_TOKEN is not set. Requests will likely be rejected with 401."
        )

    transport = LiveKitRtcTransport(config.rtc.url, sample_rate=config.media.sample_rate)
    device = LiveKitMicrophone(
        sample_rate=config.media.sample_rate,
        num_channels=config.media.num_channels,
    )

    async with AgentControlClient(config.api) as client:
        controller = SessionController(config, client, transport, device)
        cli = CLIClient(controller)
        await cli.run()


def main() -> None:
    """Main entry point for CLI client."""
    parser = argparse.ArgumentParser(
        description="CLI client for conversational agent voice sessions"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--app-id",
        type=str,
        default=None,
        help="Application ID passed to the transport on join",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    config = ClientConfig.from_env(args.config)
    if args.app_id:
        config = config.model_copy(
            update={"rtc": config.rtc.model_copy(update={"app_id": args.app_id})}
        )

    setup_logging(config.log_level, verbose=args.verbose)

    try:
        asyncio.run(run_client(config))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
