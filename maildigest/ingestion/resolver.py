"""Image resolver: fetches the scan bytes behind a mail-piece locator."""

import asyncio
from typing import Any, Dict, Iterator, List, Optional

import requests
import structlog

from ..config.settings import ResolverSettings, get_settings
from ..exceptions import MailboxError
from .mailbox import Mailbox, decode_base64url
from .models import ImageLocator, InlineContentLocator, MessageContext, RemoteUrlLocator

logger = structlog.get_logger(__name__)

CONTENT_ID_HEADERS = ("content-id", "x-attachment-id")


def normalize_content_id(value: Optional[str]) -> str:
    """Canonical form of a content id: no ``cid:`` prefix, no brackets, lowercase."""
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower().startswith("cid:"):
        cleaned = cleaned[4:]
    return cleaned.strip().strip("<>").strip().lower()


def content_ids_match(target: str, header_value: Optional[str]) -> bool:
    """Tolerant match between a locator's content id and a part header."""
    candidate = normalize_content_id(header_value)
    if not target or not candidate:
        return False
    return target == candidate or target in candidate or candidate in target


def part_headers(part: Dict[str, Any]) -> Dict[str, str]:
    """Lowercased header map of a MIME part."""
    headers = {}
    for header in part.get("headers") or []:
        name = (header.get("name") or "").lower()
        if name:
            headers[name] = header.get("value") or ""
    return headers


class ImageResolver:
    """Resolves image locators to raw bytes."""

    def __init__(self, mailbox: Mailbox, http_session: Optional[requests.Session] = None,
                 settings: Optional[ResolverSettings] = None):
        """Initialize image resolver."""
        self.mailbox = mailbox
        self.http_session = http_session or requests.Session()
        self.settings = settings or get_settings().resolver

    async def resolve(self, locator: ImageLocator, context: MessageContext) -> Optional[bytes]:
        """Return the image bytes, or None when the image cannot be found.

        Only fatal transport failures (mailbox authentication) propagate.
        """
        if isinstance(locator, InlineContentLocator):
            return await self._resolve_inline(locator, context)
        if isinstance(locator, RemoteUrlLocator):
            return await self._resolve_remote(locator)
        logger.warning("Unsupported image locator", locator=repr(locator))
        return None

    async def _resolve_inline(self, locator: InlineContentLocator, context: MessageContext) -> Optional[bytes]:
        """Find the MIME part carrying ``locator`` and return its decoded body."""
        if context.payload is None:
            try:
                message = await self.mailbox.get_message(context.message_id)
            except MailboxError as exc:
                logger.warning("Message fetch for inline image failed",
                               message_id=context.message_id, image_locator=str(locator), error=str(exc))
                return None
            context.payload = message.get("payload") or {}

        target = normalize_content_id(locator.content_id)
        part = self.find_part(context.payload, target)
        if part is None:
            logger.info("No MIME part matches inline image",
                        message_id=context.message_id, image_locator=str(locator))
            return None

        body = part.get("body") or {}
        if body.get("data"):
            data = decode_base64url(body["data"])
            return data or None

        attachment_id = body.get("attachmentId")
        if attachment_id:
            try:
                attachment = await self.mailbox.get_attachment(context.message_id, attachment_id)
            except MailboxError as exc:
                logger.warning("Attachment fetch failed",
                               message_id=context.message_id, image_locator=str(locator), error=str(exc))
                return None
            data = decode_base64url(attachment.get("data"))
            if data:
                return data

        logger.warning("Inline image part has no retrievable data",
                       message_id=context.message_id, image_locator=str(locator))
        return None

    def find_part(self, payload: Optional[Dict[str, Any]], target: str) -> Optional[Dict[str, Any]]:
        """Find the part whose content id matches ``target``.

        An exact id match anywhere within the depth bound wins. A containment
        match is only accepted when exactly one part qualifies, so ``scan-1``
        never resolves to ``scan-10``.
        """
        parts = list(self.walk_parts(payload))

        for part in parts:
            headers = part_headers(part)
            if any(normalize_content_id(headers.get(name)) == target for name in CONTENT_ID_HEADERS):
                return part

        loose = [part for part in parts
                 if any(content_ids_match(target, part_headers(part).get(name)) for name in CONTENT_ID_HEADERS)]
        if len(loose) == 1:
            return loose[0]
        if loose:
            logger.warning("Content id matches several parts, not guessing", content_id=target, matches=len(loose))
        return None

    def walk_parts(self, payload: Optional[Dict[str, Any]], depth: int = 0) -> Iterator[Dict[str, Any]]:
        """Yield parts in document order down to ``max_part_depth``."""
        if not payload or depth > self.settings.max_part_depth:
            return
        yield payload
        children: List[Dict[str, Any]] = payload.get("parts") or []
        for child in children:
            yield from self.walk_parts(child, depth + 1)

    async def _resolve_remote(self, locator: RemoteUrlLocator) -> Optional[bytes]:
        """Single GET; any failure is an absence, never retried."""
        try:
            response = await asyncio.to_thread(
                self.http_session.get, locator.url, timeout=self.settings.timeout_seconds
            )
        except requests.RequestException as exc:
            logger.warning("Remote image fetch failed", image_locator=locator.url, error=str(exc))
            return None

        if not 200 <= response.status_code < 300:
            logger.warning("Remote image fetch returned error status",
                           image_locator=locator.url, status_code=response.status_code)
            return None
        return response.content or None
