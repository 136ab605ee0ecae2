"""Inbound Feishu event parsing, verification and authorization."""

import hmac
import json
import logging
import re
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from agentbridge.core.models import StrictBaseModel
from agentbridge.core.settings import BridgeSettings

logger = logging.getLogger(__name__)

MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"
DEFAULT_IMAGE_PROMPT = "Please analyze this image."

_MENTION_KEY_RE = re.compile(r"@_user_\d+")


class IncomingMessage(StrictBaseModel):
    """A chat message addressed to the bot."""

    message_id: str
    chat_id: str
    user_id: str
    chat_type: str = "p2p"
    text: str = ""
    image_key: Optional[str] = None


class EventHandler:
    """Turns event callback payloads into IncomingMessage objects.

    Duplicate deliveries (Feishu retries callbacks it considers unanswered)
    are recognised by event id and dropped.
    """

    def __init__(self, settings: BridgeSettings, dedupe_capacity: int = 1000):
        self._settings = settings
        self._dedupe_capacity = dedupe_capacity
        self._seen_events: "OrderedDict[str, None]" = OrderedDict()

    def verify_token(self, payload: Dict[str, Any]) -> bool:
        """Check the callback's verification token when one is configured."""
        expected = self._settings.feishu.verification_token
        if not expected:
            return True
        header = payload.get("header") or {}
        token = header.get("token") or payload.get("token") or ""
        return hmac.compare_digest(str(token), expected)

    def is_duplicate(self, event_id: Optional[str]) -> bool:
        """Record the event id and report whether it was seen before."""
        if not event_id:
            return False
        if event_id in self._seen_events:
            return True
        self._seen_events[event_id] = None
        while len(self._seen_events) > self._dedupe_capacity:
            self._seen_events.popitem(last=False)
        return False

    def is_authorized(self, message: IncomingMessage) -> bool:
        """Empty allow-lists admit everyone."""
        users = self._settings.authorized_user_ids
        chats = self._settings.authorized_chat_ids
        if users and message.user_id not in users:
            return False
        if chats and message.chat_id not in chats:
            return False
        return True

    def process(self, payload: Dict[str, Any]) -> Optional[IncomingMessage]:
        """Extract the message to act on, if any.

        Args:
            payload: Decoded event callback body (schema 2.0)

        Returns:
            The message, or None for other event types, duplicates,
            unsupported content and unauthorized senders
        """
        header = payload.get("header") or {}
        event_type = header.get("event_type")
        if event_type != MESSAGE_RECEIVE_EVENT:
            logger.debug(f"Ignoring event type {event_type}")
            return None

        if self.is_duplicate(header.get("event_id")):
            logger.debug(f"Ignoring duplicate event {header.get('event_id')}")
            return None

        message = self.parse_message(payload.get("event") or {})
        if message is None:
            return None

        if not self.is_authorized(message):
            logger.warning(f"Unauthorized message from user {message.user_id} in chat {message.chat_id}")
            return None

        return message

    def parse_message(self, event: Dict[str, Any]) -> Optional[IncomingMessage]:
        """Parse an ``im.message.receive_v1`` event body."""
        sender = event.get("sender") or {}
        if sender.get("sender_type") not in (None, "user"):
            return None

        message = event.get("message") or {}
        message_id = message.get("message_id")
        chat_id = message.get("chat_id")
        if not message_id or not chat_id:
            logger.warning("Message event without message_id or chat_id")
            return None

        chat_type = message.get("chat_type") or "p2p"
        mentions = message.get("mentions") or []
        if chat_type == "group" and not self._mentions_bot(mentions):
            return None

        try:
            content = json.loads(message.get("content") or "{}")
        except json.JSONDecodeError:
            logger.warning(f"Undecodable content in message {message_id}")
            return None

        msg_type = message.get("message_type")
        if msg_type == "text":
            text, image_key = str(content.get("text", "")), None
        elif msg_type == "image":
            text, image_key = "", content.get("image_key")
        elif msg_type == "post":
            text, image_key = parse_post_content(content)
        else:
            logger.debug(f"Ignoring unsupported message type {msg_type}")
            return None

        text = strip_mentions(text, mentions)
        if not text and image_key:
            text = DEFAULT_IMAGE_PROMPT
        if not text:
            return None

        sender_id = sender.get("sender_id") or {}
        return IncomingMessage(
            message_id=message_id,
            chat_id=chat_id,
            user_id=sender_id.get("open_id") or sender_id.get("user_id") or "",
            chat_type=chat_type,
            text=text,
            image_key=image_key,
        )

    def _mentions_bot(self, mentions: List[Dict[str, Any]]) -> bool:
        bot_open_id = self._settings.feishu.bot_open_id
        if not bot_open_id:
            return bool(mentions)
        return any((mention.get("id") or {}).get("open_id") == bot_open_id for mention in mentions)


def strip_mentions(text: str, mentions: List[Dict[str, Any]]) -> str:
    """Remove ``@_user_N`` placeholders and collapse the leftover whitespace."""
    for mention in mentions:
        key = mention.get("key")
        if key:
            text = text.replace(key, "")
    text = _MENTION_KEY_RE.sub("", text)
    return re.sub(r"[ \t]+", " ", text).strip()


def parse_post_content(content: Dict[str, Any]) -> Tuple[str, Optional[str]]:
    """Flatten rich-text (post) content into text plus the first image key."""
    # Posts arrive either bare or wrapped in a locale key such as zh_cn
    if "content" not in content:
        for value in content.values():
            if isinstance(value, dict) and "content" in value:
                content = value
                break

    lines: List[str] = []
    image_key: Optional[str] = None
    title = content.get("title")
    if title:
        lines.append(str(title))

    for paragraph in content.get("content") or []:
        parts: List[str] = []
        for element in paragraph or []:
            tag = element.get("tag")
            if tag in ("text", "a", "md"):
                parts.append(str(element.get("text", "")))
            elif tag == "img" and image_key is None:
                image_key = element.get("image_key")
            elif tag == "code_block":
                parts.append(f"```{element.get('language', '')}\n{element.get('text', '')}\n```")
        if parts:
            lines.append("".join(parts))

    return "\n".join(lines).strip(), image_key
