"""Bounded tree walks over a parsed digest document."""

import re
from typing import Iterator, Optional, Sequence

from bs4 import BeautifulSoup, Tag

_WHITESPACE = re.compile(r"\s+")


def load_document(html: str) -> BeautifulSoup:
    """Parse digest HTML; the stdlib parser tolerates broken markup."""
    return BeautifulSoup(html or "", "html.parser")


def normalize_whitespace(text: Optional[str]) -> str:
    """Collapse all whitespace runs to single spaces."""
    if not text:
        return ""
    return _WHITESPACE.sub(" ", text).strip()


def element_text(element: Optional[Tag]) -> str:
    """Whitespace-normalized text content of an element."""
    if element is None:
        return ""
    return normalize_whitespace(element.get_text(" "))


def iter_ancestors(element: Tag, max_depth: int) -> Iterator[Tag]:
    """Yield up to ``max_depth`` ancestors, nearest first, stopping at the document root."""
    current = element.parent
    depth = 0
    while current is not None and depth < max_depth:
        if not isinstance(current, Tag) or current.name == "[document]":
            return
        yield current
        current = current.parent
        depth += 1


def closest(element: Tag, names: Sequence[str], max_depth: int = 50) -> Optional[Tag]:
    """Nearest ancestor whose tag name is in ``names``."""
    for ancestor in iter_ancestors(element, max_depth):
        if ancestor.name in names:
            return ancestor
    return None


def attribute_text(element: Tag) -> str:
    """Lowercased id and class attributes, space-joined."""
    parts = []
    element_id = element.get("id")
    if element_id:
        parts.append(str(element_id))
    classes = element.get("class") or []
    if isinstance(classes, str):
        classes = [classes]
    parts.extend(str(item) for item in classes)
    return " ".join(parts).lower()


def sibling_elements(element: Tag) -> Iterator[Tag]:
    """Element siblings of ``element`` in document order, excluding itself."""
    parent = element.parent
    if parent is None:
        return
    for child in parent.children:
        if isinstance(child, Tag) and child is not element:
            yield child


def parse_dimension(value: Optional[str]) -> Optional[int]:
    """Parse a declared width/height such as ``"120"`` or ``"120px"``."""
    if value is None or str(value).strip().endswith("%"):
        return None
    match = re.match(r"\s*(\d+)", str(value))
    if not match:
        return None
    return int(match.group(1))
