"""Conversation log.

Append-only, arrival-ordered record of user, system and agent messages for
the current session. Entries are never reordered or deduplicated.
"""

import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

logger = logging.getLogger(__name__)


class Sender(Enum):
    """Author of a conversation message."""

    USER = "user"
    SYSTEM = "system"
    AGENT = "agent"


@dataclass(frozen=True)
class ConversationMessage:
    """Single conversation entry."""

    sender: Sender
    text: str
    timestamp: datetime = field(default_factory=datetime.now)


MessageListener = Callable[[ConversationMessage], None]


class ConversationLog:
    """Append-only message sequence with change listeners."""

    def __init__(self) -> None:
        self._messages: list[ConversationMessage] = []
        self._listeners: list[MessageListener] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(list(self._messages))

    @property
    def messages(self) -> tuple[ConversationMessage, ...]:
        """Immutable snapshot of the log."""
        return tuple(self._messages)

    def add_listener(self, listener: MessageListener) -> None:
        """Register a callback invoked for every appended message."""
        self._listeners.append(listener)

    def remove_listener(self, listener: MessageListener) -> None:
        """Unregister a previously added callback."""
        if listener in self._listeners:
            self._listeners.remove(listener)

    def append(self, message: ConversationMessage) -> None:
        """Append a message and notify listeners."""
        self._messages.append(message)
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception as e:
                logger.warning(
                    "Conversation listener failed",
                    extra={"error": str(e)},
                )

    def extend(self, messages: list[ConversationMessage]) -> None:
        """Append several messages in order."""
        for message in messages:
            self.append(message)

    def add(self, sender: Sender, text: str, timestamp: datetime | None = None) -> None:
        """Append a message built from its parts."""
        self.append(
            ConversationMessage(
                sender=sender,
                text=text,
                timestamp=timestamp or datetime.now(),
            )
        )

    def system(self, text: str) -> None:
        """Append a system message."""
        self.add(Sender.SYSTEM, text)

    def clear(self) -> None:
        """Drop every message."""
        self._messages.clear()
