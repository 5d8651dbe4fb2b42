"""Agent backend HTTP client.

Translates the agent backend's loosely shaped JSON responses into typed
results. The backend does not nest fields consistently across endpoints, so
each logical field is looked up over a declared, ordered list of candidate
paths (top level, then ``data``, then ``result``); the first present,
non-empty value wins.
"""

import json
import logging
from datetime import datetime
from typing import Any, Literal

import aiohttp
from pydantic import BaseModel, Field

from src.voice_session.config import ApiConfig
from src.voice_session.conversation import ConversationMessage, Sender
from src.voice_session.errors import NetworkError, ProtocolError
from src.voice_session.uid import normalize_uid

logger = logging.getLogger(__name__)

FieldPath = tuple[str, ...]


def _nested(name: str) -> tuple[FieldPath, ...]:
    return ((name,), ("data", name), ("result", name))


FIELD_PATHS: dict[str, tuple[FieldPath, ...]] = {
    "agent_id": _nested("agent_id"),
    "channel_name": _nested("channel_name"),
    "rtc_uid": _nested("rtc_uid"),
    "is_new": _nested("is_new"),
    "token": _nested("token"),
    "history": (*_nested("history"), ("data",)),
}


def _is_present(value: Any) -> bool:
    return value is not None and value != "" and value != [] and value != {}


def resolve_field(payload: dict[str, Any], name: str) -> Any | None:
    """Return the first present value of ``name`` over its candidate paths.

    Args:
        payload: Decoded response body
        name: Logical field name (key of :data:`FIELD_PATHS`)

    Returns:
        Resolved value, or None when every candidate is absent or empty
    """
    for path in FIELD_PATHS[name]:
        node: Any = payload
        for key in path:
            if not isinstance(node, dict) or key not in node:
                node = None
                break
            node = node[key]
        if _is_present(node):
            return node
    return None


def is_success(payload: dict[str, Any]) -> bool:
    """Read the success flag; absence means success."""
    flag = payload.get("success")
    if flag is None:
        flag = payload.get("ok")
    return True if flag is None else bool(flag)


def _failure_message(payload: dict[str, Any], default: str) -> str:
    error = payload.get("error")
    if isinstance(error, dict):
        error = error.get("message")
    return str(error) if _is_present(error) else default


class StartAgentResult(BaseModel):
    """Agent acquired (started or reused) by the backend."""

    agent_id: str = Field(..., min_length=1)
    channel_name: str = Field(..., min_length=1)
    rtc_uid: int = Field(..., ge=1, le=65535)
    is_new: bool = False


class TokenResult(BaseModel):
    """Channel access token issued for a UID."""

    token: str = Field(..., min_length=1)
    channel_name: str | None = None
    rtc_uid: int = Field(..., ge=1, le=65535)


class HistoryEntry(BaseModel):
    """Single conversation history entry."""

    role: Literal["user", "agent"] = "agent"
    text: str = ""
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_message(self) -> ConversationMessage:
        sender = Sender.USER if self.role == "user" else Sender.AGENT
        return ConversationMessage(sender=sender, text=self.text, timestamp=self.timestamp)


def parse_timestamp(value: Any) -> datetime:
    """Parse epoch milliseconds or ISO-8601; anything else means now."""
    if isinstance(value, bool) or not _is_present(value):
        return datetime.now()

    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                return datetime.now()
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone().replace(tzinfo=None)
            return parsed

    if isinstance(value, int | float):
        try:
            return datetime.fromtimestamp(value / 1000.0)
        except (OverflowError, OSError, ValueError):
            return datetime.now()

    return datetime.now()


def parse_history_entry(item: Any) -> HistoryEntry | None:
    """Convert one raw history item, defaulting missing fields.

    Bare strings are agent messages timestamped now. Items that are neither
    strings nor objects are skipped (None is returned).
    """
    if isinstance(item, str):
        return HistoryEntry(role="agent", text=item)

    if not isinstance(item, dict):
        return None

    text = item.get("content") or item.get("message") or ""
    return HistoryEntry(
        role="user" if item.get("role") == "user" else "agent",
        text=text if isinstance(text, str) else str(text),
        timestamp=parse_timestamp(item.get("timestamp")),
    )


class AgentControlClient:
    """Client for the agent backend.

    Endpoints (all under the configured prefix):
    - GET  /start-agent
    - GET  /get-token?rtc_uid=N
    - POST /send-text   {agent_id, message}
    - POST /stop-agent  {agent_id}
    - POST /get-history {agent_id}
    """

    def __init__(self, config: ApiConfig, session: aiohttp.ClientSession | None = None) -> None:
        """Initialize client.

        Args:
            config: Backend API configuration
            session: Optional externally owned aiohttp session
        """
        self.config = config
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "AgentControlClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_s),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the aiohttp session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.access_token:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Perform a request and return the decoded JSON object.

        Raises:
            NetworkError: On connection failures, timeouts, or HTTP error statuses
            ProtocolError: If the body is not a JSON object
        """
        session = self._ensure_session()
        url = f"{self.config.base_url}{self.config.with_prefix(path)}"

        try:
            async with session.request(
                method,
                url,
                params=params,
                json=body,
                headers=self._headers(),
            ) as response:
                if response.status >= 400:
                    raise NetworkError(
                        f"Request failed with status code {response.status}",
                        status=response.status,
                    )
                text = await response.text()
        except aiohttp.ClientError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e
        except TimeoutError as e:
            raise NetworkError(f"{method} {path} timed out") from e

        if not text.strip():
            return {}

        try:
            payload = json.loads(text)
        except ValueError as e:
            raise ProtocolError(f"{method} {path} returned invalid JSON") from e

        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise ProtocolError(f"{method} {path} returned {type(payload).__name__}, expected object")

        logger.debug("Backend response", extra={"method": method, "path": path})
        return payload

    async def start_agent(self, default_uid: int | None = None) -> StartAgentResult:
        """Start a new agent or reuse the running one.

        Args:
            default_uid: UID to use when the response carries no valid ``rtc_uid``

        Raises:
            ProtocolError: On explicit failure or missing ``agent_id``/``channel_name``
            NetworkError: If the request failed
        """
        payload = await self._request("GET", "/start-agent")

        if not is_success(payload):
            raise ProtocolError(_failure_message(payload, "start-agent failed"))

        agent_id = resolve_field(payload, "agent_id")
        channel_name = resolve_field(payload, "channel_name")
        if agent_id is None or channel_name is None:
            logger.error("Unexpected start-agent response", extra={"payload": payload})
            raise ProtocolError("Missing agent_id or channel_name in API response.")

        rtc_uid = resolve_field(payload, "rtc_uid")
        result = StartAgentResult(
            agent_id=str(agent_id),
            channel_name=str(channel_name),
            rtc_uid=normalize_uid(rtc_uid if rtc_uid is not None else default_uid),
            is_new=bool(resolve_field(payload, "is_new")),
        )
        logger.info(
            "Agent acquired",
            extra={
                "agent_id": result.agent_id,
                "channel": result.channel_name,
                "is_new": result.is_new,
            },
        )
        return result

    async def fetch_token(self, uid: Any) -> TokenResult:
        """Request a channel token for ``uid`` (normalized first).

        Raises:
            ProtocolError: On explicit failure or when no token resolves
            NetworkError: If the request failed
        """
        safe_uid = normalize_uid(uid)
        payload = await self._request("GET", "/get-token", params={"rtc_uid": safe_uid})

        token = resolve_field(payload, "token")
        if not is_success(payload) or token is None:
            raise ProtocolError(_failure_message(payload, "API did not return an RTC token."))

        returned_uid = resolve_field(payload, "rtc_uid")
        channel_name = resolve_field(payload, "channel_name")
        return TokenResult(
            token=str(token),
            channel_name=str(channel_name) if channel_name is not None else None,
            rtc_uid=normalize_uid(returned_uid if returned_uid is not None else safe_uid),
        )

    async def send_text(self, agent_id: str, message: str) -> None:
        """Ask the agent to speak ``message`` in the channel.

        Raises:
            ProtocolError: On explicit failure
            NetworkError: If the request failed
        """
        payload = await self._request(
            "POST", "/send-text", body={"agent_id": agent_id, "message": message}
        )
        if not is_success(payload):
            raise ProtocolError(_failure_message(payload, "send-text failed"))

    async def stop_agent(self, agent_id: str) -> bool:
        """Ask the backend to stop the agent. Best-effort.

        Returns:
            True if the backend acknowledged the stop
        """
        try:
            payload = await self._request("POST", "/stop-agent", body={"agent_id": agent_id})
        except (NetworkError, ProtocolError) as e:
            logger.warning("Stop agent request failed", extra={"agent_id": agent_id, "error": str(e)})
            return False

        if not is_success(payload):
            logger.warning(
                "Backend refused to stop agent",
                extra={"agent_id": agent_id, "error": _failure_message(payload, "stop-agent failed")},
            )
            return False
        return True

    async def fetch_history(self, agent_id: str) -> list[HistoryEntry]:
        """Fetch the agent's conversation history.

        Raises:
            ProtocolError: On explicit failure or a non-list history
            NetworkError: If the request failed
        """
        payload = await self._request("POST", "/get-history", body={"agent_id": agent_id})
        if not is_success(payload):
            raise ProtocolError(_failure_message(payload, "get-history failed"))

        history = resolve_field(payload, "history")
        if history is None:
            return []
        if not isinstance(history, list):
            raise ProtocolError(f"history is {type(history).__name__}, expected list")

        entries = []
        for item in history:
            entry = parse_history_entry(item)
            if entry is None:
                logger.debug("Skipping malformed history entry", extra={"entry": repr(item)})
                continue
            entries.append(entry)
        return entries
