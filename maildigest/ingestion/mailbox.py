"""Mailbox access: the abstract interface and a Gmail REST implementation."""

import asyncio
import base64
import binascii
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import requests
import structlog

from ..config.settings import MailboxSettings, get_settings
from ..exceptions import MailboxAuthenticationError, MailboxError

logger = structlog.get_logger(__name__)

MAX_PART_DEPTH = 10


def decode_base64url(data: Optional[str]) -> bytes:
    """Decode URL-safe base64 as used by the Gmail API.

    The alphabet is normalized to standard base64 and missing padding is
    restored before decoding.
    """
    if not data:
        return b""
    normalized = data.strip().replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    try:
        return base64.b64decode(normalized)
    except (binascii.Error, ValueError) as exc:
        logger.warning("Base64 body could not be decoded", length=len(data), exc_info=exc)
        return b""


def extract_html(payload: Optional[Dict[str, Any]], depth: int = 0) -> Optional[str]:
    """Return the first ``text/html`` body in a MIME part tree."""
    if not payload or depth > MAX_PART_DEPTH:
        return None

    body = payload.get("body") or {}
    if payload.get("mimeType") == "text/html" and body.get("data"):
        return decode_base64url(body["data"]).decode("utf-8", errors="replace")

    for part in payload.get("parts") or []:
        html = extract_html(part, depth + 1)
        if html:
            return html
    return None


class Mailbox(ABC):
    """Source of digest messages."""

    @abstractmethod
    async def list_messages(self, query: str) -> List[Dict[str, Any]]:
        """List message references (``{"id": ...}``) matching ``query``, newest first."""
        pass

    @abstractmethod
    async def get_message(self, message_id: str) -> Dict[str, Any]:
        """Fetch the full message resource, including its ``payload`` part tree."""
        pass

    @abstractmethod
    async def get_attachment(self, message_id: str, attachment_id: str) -> Dict[str, Any]:
        """Fetch an attachment body (``{"data": <base64url>, "size": ...}``)."""
        pass


class GmailMailbox(Mailbox):
    """Gmail REST v1 mailbox authenticated with an OAuth bearer token."""

    def __init__(self, access_token: str, settings: Optional[MailboxSettings] = None,
                 session: Optional[requests.Session] = None):
        """Initialize Gmail mailbox."""
        self.settings = settings or get_settings().mailbox
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {access_token}"})
        self.base_url = self.settings.api_base_url.rstrip("/")

    async def list_messages(self, query: str) -> List[Dict[str, Any]]:
        data = await self._get("list", "/messages", {"q": query, "maxResults": self.settings.max_results})
        messages = data.get("messages") or []
        logger.info("Digest messages listed", count=len(messages))
        return messages

    async def get_message(self, message_id: str) -> Dict[str, Any]:
        return await self._get("get", f"/messages/{message_id}", {"format": "full"})

    async def get_attachment(self, message_id: str, attachment_id: str) -> Dict[str, Any]:
        return await self._get("attachment", f"/messages/{message_id}/attachments/{attachment_id}")

    async def _get(self, operation: str, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """GET a Gmail resource, mapping auth failures to a distinct error."""
        url = f"{self.base_url}{path}"
        try:
            response = await asyncio.to_thread(
                self.session.get, url, params=params, timeout=self.settings.timeout_seconds
            )
        except requests.RequestException as exc:
            raise MailboxError(operation, detail=str(exc)) from exc

        if response.status_code in (401, 403):
            logger.error("Mailbox rejected credentials", operation=operation, status_code=response.status_code)
            raise MailboxAuthenticationError(
                "Mailbox access token was rejected", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise MailboxError(operation, status_code=response.status_code, detail=response.text[:200])

        try:
            return response.json()
        except ValueError as exc:
            raise MailboxError(operation, status_code=response.status_code, detail="invalid JSON") from exc
