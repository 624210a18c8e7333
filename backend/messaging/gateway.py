"""Outbound messaging: gateway contract and retrying dispatcher.

The chat-protocol client lives outside this service. The engine talks to
it only through MessagingGateway, keyed by (session, contact). Any send
may raise SessionNotReadyError while the session reconnects; the
MessageDispatcher retries those with exponential backoff and lets every
other error through on the first failure.
"""

import json
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import structlog

from app.config import Settings
from core.exceptions import SessionNotReadyError
from workflow.retry_strategies import RetryStrategy, execute_with_retry

logger = structlog.get_logger(__name__)


@dataclass
class MessageToSend:
    """One outbound message produced by a node."""

    kind: str  # text, media, buttons, list
    text: str = ""
    media_type: Optional[str] = None
    url: Optional[str] = None
    caption: Optional[str] = None
    file_name: Optional[str] = None
    send_audio_as_voice: bool = False
    buttons: list[dict[str, Any]] = field(default_factory=list)
    button_text: Optional[str] = None
    sections: list[dict[str, Any]] = field(default_factory=list)
    footer: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def text_message(cls, text: str) -> "MessageToSend":
        """Plain text, unless the text is a JSON buttons/list payload.

        Older workflows store interactive messages as JSON strings inside
        a SEND_MESSAGE node, e.g.
        ``{"type": "buttons", "text": "Pick one", "buttons": [...]}``.
        """
        stripped = (text or "").strip()
        if stripped.startswith("{"):
            try:
                payload = json.loads(stripped)
            except ValueError:
                payload = None
            if isinstance(payload, dict):
                kind = payload.get("type")
                body = payload.get("text") or payload.get("message") or ""
                if kind == "buttons" and payload.get("buttons"):
                    return cls(
                        kind="buttons",
                        text=body,
                        buttons=list(payload["buttons"]),
                        footer=payload.get("footer"),
                    )
                if kind == "list" and payload.get("sections"):
                    return cls(
                        kind="list",
                        text=body,
                        button_text=payload.get("buttonText") or "Options",
                        sections=list(payload["sections"]),
                        footer=payload.get("footer"),
                        title=payload.get("title"),
                    )
        return cls(kind="text", text=text or "")

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v not in (None, [], "")}


class MessagingGateway(ABC):
    """Sends messages to a contact through a connected chat session."""

    @abstractmethod
    async def send_text(self, session_id: str, to: str, text: str) -> Any:
        ...

    @abstractmethod
    async def send_media(
        self,
        session_id: str,
        to: str,
        media_type: str,
        url: str,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
        send_audio_as_voice: bool = False,
    ) -> Any:
        ...

    @abstractmethod
    async def send_buttons(
        self,
        session_id: str,
        to: str,
        text: str,
        buttons: list[dict[str, Any]],
        footer: Optional[str] = None,
    ) -> Any:
        ...

    @abstractmethod
    async def send_list(
        self,
        session_id: str,
        to: str,
        text: str,
        button_text: str,
        sections: list[dict[str, Any]],
        footer: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Any:
        ...


class MessageDispatcher:
    """Routes a MessageToSend to the right gateway call, with retries."""

    def __init__(self, gateway: MessagingGateway, strategy: RetryStrategy):
        self.gateway = gateway
        self.strategy = strategy

    @classmethod
    def from_settings(cls, gateway: MessagingGateway, settings: Settings) -> "MessageDispatcher":
        return cls(
            gateway,
            RetryStrategy.exponential(
                max_attempts=settings.SEND_MAX_ATTEMPTS,
                base_delay=settings.SEND_RETRY_BASE_DELAY,
                retryable_errors=(SessionNotReadyError,),
            ),
        )

    async def dispatch(self, session_id: str, contact_id: str, message: MessageToSend) -> Any:
        """Send one message.

        Raises:
            SessionNotReadyError: If the session stayed unavailable for every attempt
            ValueError: If the message kind is unknown
        """
        if message.kind == "text":
            call, args = self.gateway.send_text, (session_id, contact_id, message.text)
            kwargs = {}
        elif message.kind == "media":
            call, args = self.gateway.send_media, (session_id, contact_id, message.media_type, message.url)
            kwargs = {
                "caption": message.caption,
                "file_name": message.file_name,
                "send_audio_as_voice": message.send_audio_as_voice,
            }
        elif message.kind == "buttons":
            call, args = self.gateway.send_buttons, (session_id, contact_id, message.text, message.buttons)
            kwargs = {"footer": message.footer}
        elif message.kind == "list":
            call, args = self.gateway.send_list, (
                session_id, contact_id, message.text, message.button_text or "Options", message.sections,
            )
            kwargs = {"footer": message.footer, "title": message.title}
        else:
            raise ValueError(f"Unknown message kind: {message.kind}")

        def _on_retry(attempt, error, delay):
            logger.warning(
                "Send failed, retrying",
                session_id=session_id,
                kind=message.kind,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        return await execute_with_retry(call, self.strategy, *args, on_retry=_on_retry, **kwargs)
