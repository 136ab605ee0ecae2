"""Outbound Feishu Open API client.

Every public method is best-effort: failures are logged and reported as
``None`` or ``False``, never raised.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional, Union

import aiohttp

from agentbridge.core.errors import TransportError
from agentbridge.core.settings import FeishuSettings

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

TOKEN_PATH = "/open-apis/auth/v3/tenant_access_token/internal"
MESSAGES_PATH = "/open-apis/im/v1/messages"
IMAGES_PATH = "/open-apis/im/v1/images"
FILES_PATH = "/open-apis/im/v1/files"

# Refresh this long before the reported expiry
TOKEN_REFRESH_MARGIN_SECONDS = 300
# Feishu codes for an invalid or expired tenant token
INVALID_TOKEN_CODES = frozenset({99991661, 99991663})


class MessageSender:
    """Sends, updates and uploads chat content for one Feishu app."""

    def __init__(
        self,
        settings: FeishuSettings,
        session: Optional[aiohttp.ClientSession] = None,
        timeout_seconds: float = 30.0,
    ):
        """Initialize the sender.

        Args:
            settings: App credentials and API host
            session: Shared client session; one is created lazily when omitted
            timeout_seconds: Total timeout per HTTP call
        """
        self._settings = settings
        self._base_url = settings.base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    async def close(self) -> None:
        """Close the HTTP session if this sender created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send_card(self, chat_id: str, content: str) -> Optional[str]:
        """Send an interactive card.

        Returns:
            The new message id, or None on failure
        """
        try:
            data = await self._create_message(chat_id, "interactive", content)
        except TransportError as e:
            logger.error(f"Failed to send card to {chat_id}: {e}")
            return None

        message_id = data.get("message_id")
        if not message_id:
            logger.error(f"No message_id in send response for chat {chat_id}")
        return message_id

    async def update_card(self, message_id: str, content: str) -> bool:
        """Replace the content of a previously sent card."""
        try:
            await self._request("PATCH", f"{MESSAGES_PATH}/{message_id}", "update_card", json_body={"content": content})
            return True
        except TransportError as e:
            logger.error(f"Failed to update card {message_id}: {e}")
            return False

    async def send_text(self, chat_id: str, text: str) -> bool:
        try:
            await self._create_message(chat_id, "text", json.dumps({"text": text}, ensure_ascii=False))
            return True
        except TransportError as e:
            logger.error(f"Failed to send text to {chat_id}: {e}")
            return False

    async def download_image(self, message_id: str, image_key: str, dest: PathLike) -> bool:
        """Save an image attached to a user message to ``dest``."""
        try:
            body = await self._request_bytes(
                f"{MESSAGES_PATH}/{message_id}/resources/{image_key}",
                "download_image",
                params={"type": "image"},
            )
        except TransportError as e:
            logger.error(f"Failed to download image {image_key} of message {message_id}: {e}")
            return False

        if not body:
            logger.error(f"Empty response when downloading image {image_key}")
            return False

        try:
            dest_path = Path(dest)
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            dest_path.write_bytes(body)
        except OSError as e:
            logger.error(f"Failed to write image to {dest}: {e}")
            return False

        logger.info(f"Image {image_key} downloaded to {dest}")
        return True

    async def upload_image(self, path: PathLike) -> Optional[str]:
        """Upload an image for use in messages.

        Returns:
            The image key, or None on failure
        """
        try:
            form = aiohttp.FormData()
            form.add_field("image_type", "message")
            form.add_field("image", Path(path).read_bytes(), filename=Path(path).name)
            data = await self._request("POST", IMAGES_PATH, "upload_image", form=form)
        except (TransportError, OSError) as e:
            logger.error(f"Failed to upload image {path}: {e}")
            return None

        image_key = data.get("image_key")
        if image_key:
            logger.info(f"Image {path} uploaded as {image_key}")
        return image_key

    async def send_image(self, chat_id: str, image_key: str) -> bool:
        try:
            await self._create_message(chat_id, "image", json.dumps({"image_key": image_key}))
            return True
        except TransportError as e:
            logger.error(f"Failed to send image {image_key} to {chat_id}: {e}")
            return False

    async def send_image_file(self, chat_id: str, path: PathLike) -> bool:
        """Upload a local image and post it to the chat."""
        image_key = await self.upload_image(path)
        if not image_key:
            return False
        return await self.send_image(chat_id, image_key)

    async def upload_file(self, path: PathLike, file_type: str = "stream") -> Optional[str]:
        """Upload a file for use in messages.

        Args:
            path: Local file
            file_type: Feishu file type (pdf, doc, xls, ppt, mp4, opus or stream)

        Returns:
            The file key, or None on failure
        """
        file_path = Path(path)
        try:
            form = aiohttp.FormData()
            form.add_field("file_type", file_type)
            form.add_field("file_name", file_path.name)
            form.add_field("file", file_path.read_bytes(), filename=file_path.name)
            data = await self._request("POST", FILES_PATH, "upload_file", form=form)
        except (TransportError, OSError) as e:
            logger.error(f"Failed to upload file {path}: {e}")
            return None

        file_key = data.get("file_key")
        if file_key:
            logger.info(f"File {path} uploaded as {file_key}")
        return file_key

    async def send_file(self, chat_id: str, file_key: str) -> bool:
        try:
            await self._create_message(chat_id, "file", json.dumps({"file_key": file_key}))
            return True
        except TransportError as e:
            logger.error(f"Failed to send file {file_key} to {chat_id}: {e}")
            return False

    async def send_local_file(self, chat_id: str, path: PathLike, file_type: str = "stream") -> bool:
        """Upload a local file and post it to the chat."""
        file_key = await self.upload_file(path, file_type)
        if not file_key:
            return False
        return await self.send_file(chat_id, file_key)

    async def _create_message(self, chat_id: str, msg_type: str, content: str) -> Dict[str, Any]:
        return await self._request(
            "POST",
            MESSAGES_PATH,
            f"send_{msg_type}",
            params={"receive_id_type": "chat_id"},
            json_body={"receive_id": chat_id, "msg_type": msg_type, "content": content},
        )

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _get_token(self) -> str:
        """Return a cached tenant access token, fetching a new one when close to expiry."""
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        session = self._get_session()
        payload = {"app_id": self._settings.app_id, "app_secret": self._settings.app_secret}
        try:
            async with session.post(f"{self._base_url}{TOKEN_PATH}", json=payload, timeout=self._timeout) as response:
                if response.status >= 400:
                    raise TransportError(f"HTTP {response.status}: {await response.text()}", "get_token", status=response.status)
                body = await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise TransportError(f"Token request failed: {e}", "get_token", cause=e)

        if body.get("code", 0) != 0 or not body.get("tenant_access_token"):
            raise TransportError(f"Token request rejected: {body.get('msg')}", "get_token", code=body.get("code"))

        self._token = body["tenant_access_token"]
        expire = float(body.get("expire", 7200))
        self._token_expires_at = time.monotonic() + max(expire - TOKEN_REFRESH_MARGIN_SECONDS, 0.0)
        logger.debug("Fetched new tenant access token")
        return self._token

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        params: Optional[Dict[str, str]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[aiohttp.FormData] = None,
    ) -> Dict[str, Any]:
        """Call a JSON endpoint and return its ``data`` object.

        Raises:
            TransportError: On network failure, HTTP error, or a non-zero API code
        """
        token = await self._get_token()
        session = self._get_session()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            async with session.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json_body,
                data=form,
                headers=headers,
                timeout=self._timeout,
            ) as response:
                try:
                    body = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError):
                    body = None
                status = response.status
        except aiohttp.ClientError as e:
            raise TransportError(f"Request failed: {e}", operation, cause=e)

        if not isinstance(body, dict):
            raise TransportError(f"HTTP {status}: invalid response body", operation, status=status)

        code = body.get("code", 0)
        if code in INVALID_TOKEN_CODES:
            self._token = None
        if status >= 400 or code != 0:
            raise TransportError(f"API error {code}: {body.get('msg')}", operation, status=status, code=code)

        return body.get("data") or {}

    async def _request_bytes(self, path: str, operation: str, params: Optional[Dict[str, str]] = None) -> bytes:
        token = await self._get_token()
        session = self._get_session()
        try:
            async with session.get(
                f"{self._base_url}{path}",
                params=params,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    raise TransportError(f"HTTP {response.status}: {await response.text()}", operation, status=response.status)
                return await response.read()
        except aiohttp.ClientError as e:
            raise TransportError(f"Request failed: {e}", operation, cause=e)
