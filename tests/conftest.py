"""Shared digest samples for the test suite."""

import base64

import pytest

DIGEST_HTML = """
<html>
<body>
  <img src="https://informeddelivery.usps.com/box/pages/pixel.gif?deliveryDate=20251115&amp;uid=abc" width="1" height="1">
  <img src="cid:logo-usps" alt="USPS Logo" width="200" height="60">
  <p>Informed Delivery Daily Digest</p>
  <table id="expected-today-section">
    <tr><td>FROM: <span id="campaign-from-span-id">Widgets Inc</span></td></tr>
    <tr><td><img src="cid:scan-001" width="480" height="300" alt="Scanned image of your mail piece"></td></tr>
  </table>
  <table id="expected-this-week-section">
    <tr><td><span id="week-range-label">November 17, 2025 - November 22, 2025</span></td></tr>
    <tr><td>FROM: Acme Corp</td></tr>
    <tr><td><img src="cid:scan-002" width="480" height="300" alt="Scanned image of your mail piece"></td></tr>
  </table>
</body>
</html>
"""

SCAN_001_BYTES = b"scan-001-image-bytes"
SCAN_002_BYTES = b"scan-002-image-bytes"


def encode_b64url(data: bytes) -> str:
    """Gmail-style URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def build_payload(html: str = DIGEST_HTML, include_scan_002: bool = True) -> dict:
    """MIME part tree of a digest message carrying its scans inline."""
    parts = [
        {
            "mimeType": "multipart/alternative",
            "parts": [
                {"mimeType": "text/plain", "body": {"data": encode_b64url(b"Your daily digest")}},
                {"mimeType": "text/html", "body": {"data": encode_b64url(html.encode("utf-8"))}},
            ],
        },
        {
            "mimeType": "image/jpeg",
            "headers": [{"name": "Content-ID", "value": "<scan-001>"}],
            "body": {"data": encode_b64url(SCAN_001_BYTES)},
        },
    ]
    if include_scan_002:
        parts.append({
            "mimeType": "image/jpeg",
            "headers": [{"name": "X-Attachment-Id", "value": "scan-002"}],
            "body": {"data": encode_b64url(SCAN_002_BYTES)},
        })
    return {"mimeType": "multipart/related", "parts": parts}


@pytest.fixture
def digest_html():
    """Digest with one 'today' scan, one 'this week' scan and a logo."""
    return DIGEST_HTML


@pytest.fixture
def digest_payload():
    """Payload builder, so tests can drop parts."""
    return build_payload
