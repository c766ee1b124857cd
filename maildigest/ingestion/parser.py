"""Digest tile parser: finds mail-piece scans and guesses sender and date."""

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional, Pattern, Set, Tuple
from urllib.parse import parse_qs, urlparse

import dateutil.parser
import structlog
from bs4 import BeautifulSoup, NavigableString, Tag

from ..config.settings import ParserSettings, get_settings
from ..config.template import DigestTemplate, load_digest_template
from .dom import (
    attribute_text, closest, element_text, iter_ancestors, load_document,
    normalize_whitespace, parse_dimension, sibling_elements
)
from .models import (
    ImageLocator, MailPieceCandidate, RemoteUrlLocator, SectionHint, parse_locator
)

logger = structlog.get_logger(__name__)

_MONTH_NAME = (
    r"(?:Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?|"
    r"Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)"
)
_WEEKDAY = r"(?:Mon|Tue|Wed|Thu|Fri|Sat|Sun)[a-z]*\.?"
_SHORT_DATE = r"(?P<date>\d{1,2}/\d{1,2}(?:/(?P<year>\d{2,4}))?)"

# Patterns only locate a date span; dateutil turns the span into a date.
MONTH_DAY_YEAR = re.compile(rf"\b{_MONTH_NAME}\.?\s+\d{{1,2}},?\s+\d{{4}}\b", re.IGNORECASE)
DIGEST_FOR_SHORT_DATE = re.compile(rf"Daily\s+Digest\s+for\s+{_WEEKDAY},?\s+{_SHORT_DATE}", re.IGNORECASE)
WEEKDAY_SHORT_DATE = re.compile(rf"\b{_WEEKDAY},?\s+{_SHORT_DATE}\b", re.IGNORECASE)
WEEKDAY_DAY_MONTH_YEAR = re.compile(
    rf"\b{_WEEKDAY},?\s+(?P<date>\d{{1,2}}\s+{_MONTH_NAME}\.?,?\s+\d{{4}})\b", re.IGNORECASE
)
WEEKDAY_MONTH_DAY_YEAR = re.compile(
    rf"\b{_WEEKDAY},?\s+(?P<date>{_MONTH_NAME}\.?\s+\d{{1,2}},?\s+\d{{4}})\b", re.IGNORECASE
)

FROM_PATTERN = re.compile(r"\bFROM\s*:\s*(.+?)(?=\s+campaign\b|\s+learn\b|$)", re.IGNORECASE)
CAPITALIZED_PHRASE = re.compile(r"\b([A-Z][A-Za-z0-9&'.\-]*(?:\s+[A-Z][A-Za-z0-9&'.\-]*){1,4})")
TRAILING_CAMPAIGN = re.compile(r"\s*\bcampaign\s*$", re.IGNORECASE)

CONTAINER_TAGS = ("td", "div", "table")
SECTION_NAMES = {hint.value for hint in SectionHint}

SenderResolver = Callable[["_TileContext"], Optional[str]]
DateResolver = Callable[[BeautifulSoup, date], Optional[date]]


@dataclass
class _TileContext:
    """Per-image view of the document shared by the sender strategies."""

    image: Tag
    key: str
    container: Optional[Tag]
    table: Optional[Tag]
    row: Optional[Tag]
    scan_keys: Set[str]
    positions: Dict[int, int]


@dataclass
class _SectionMatch:
    """Section of a tile and where it was recognized: a marked element or a heading string."""

    section: SectionHint
    element: Optional[Tag] = None
    heading: Optional[NavigableString] = None


def parse_loose_date(span: str, reference_date: Optional[date] = None) -> Optional[date]:
    """Parse one date span such as ``"Nov 17, 2025"`` or ``"11/15"``.

    Fields missing from the span come from January 1 of the reference year.
    Returns None for spans dateutil rejects, including impossible dates.
    """
    span = normalize_whitespace(span)
    if not span:
        return None
    reference_date = reference_date or date.today()
    try:
        return dateutil.parser.parse(span, default=datetime(reference_date.year, 1, 1)).date()
    except (ValueError, OverflowError):
        return None


def parse_month_day_year(text: str) -> Optional[date]:
    """First valid loose ``Month D, YYYY`` date in ``text``."""
    for match in MONTH_DAY_YEAR.finditer(text or ""):
        found = parse_loose_date(match.group(0))
        if found is not None:
            return found
    return None


def roll_back_year(found: date, reference_date: date) -> date:
    """Move a year-less date lying more than a month past the reference into the previous year."""
    # a December digest read in January belongs to the previous year
    if found - reference_date > timedelta(days=31):
        try:
            return found.replace(year=found.year - 1)
        except ValueError:
            return found
    return found


class TileExtractor:
    """Extracts mail-piece candidates from digest HTML."""

    def __init__(self, template: Optional[DigestTemplate] = None, settings: Optional[ParserSettings] = None):
        """Initialize tile extractor."""
        self.settings = settings or get_settings().parser
        self.template = template or load_digest_template(self.settings.template_path)

        self._denylist = self.template.denylist_patterns()
        self._boilerplate = self.template.boilerplate_pattern()
        self._section_text: List[Tuple[SectionHint, Pattern[str]]] = [
            (SectionHint(name), re.compile(marker.text, re.IGNORECASE))
            for name, marker in self.template.section_markers.items()
            if marker.text and name in SECTION_NAMES
        ]

        self._digest_date_resolvers: List[DateResolver] = [
            self._date_from_tracking_pixel,
            self._date_from_marker_elements,
            self._date_from_body_text,
        ]
        self._sender_resolvers: List[SenderResolver] = [
            self._sender_from_table_label,
            self._sender_from_ancestor_label,
            self._sender_from_table_rows,
            self._sender_from_row,
            self._sender_from_ancestor_text,
            self._sender_from_siblings,
            self._sender_from_capitalized_phrase,
            self._sender_from_container_text,
        ]
        self._section_resolvers = [
            self._section_from_attributes,
            self._section_from_heading_text,
        ]

    def parse(self, html: str, reference_date: Optional[date] = None) -> List[MailPieceCandidate]:
        """Return mail-piece candidates in document order, one per image locator."""
        reference_date = reference_date or date.today()

        try:
            soup = load_document(html)
        except Exception as exc:
            logger.warning("Digest HTML could not be parsed", exc_info=exc)
            return []

        digest_date = self.extract_digest_date(soup, reference_date)

        scans: List[Tuple[Tag, ImageLocator]] = []
        for image in soup.find_all("img"):
            locator = self._accept_image(image)
            if locator is not None:
                scans.append((image, locator))

        scan_keys = {str(locator) for _, locator in scans}
        positions = {id(tag): index for index, tag in enumerate(soup.find_all(True))}

        candidates: List[MailPieceCandidate] = []
        seen: Set[str] = set()
        for image, locator in scans:
            key = str(locator)
            if key in seen:
                continue
            seen.add(key)

            try:
                candidate = self._build_candidate(image, locator, digest_date, scan_keys, positions)
            except Exception as exc:
                logger.warning("Tile heuristics failed, keeping bare candidate",
                               image_locator=key, exc_info=exc)
                candidate = MailPieceCandidate(image_locator=locator, delivery_date=digest_date)
            candidates.append(candidate)

        logger.info("Digest tiles parsed",
                    candidates=len(candidates),
                    images_seen=len(soup.find_all("img")),
                    digest_date=digest_date.isoformat() if digest_date else None)
        return candidates

    def extract_digest_date(self, soup: BeautifulSoup, reference_date: date) -> Optional[date]:
        """Digest date from the first strategy that finds one."""
        for resolver in self._digest_date_resolvers:
            found = resolver(soup, reference_date)
            if found is not None:
                logger.debug("Digest date resolved", strategy=resolver.__name__, digest_date=found.isoformat())
                return found
        return None

    # Candidate filtering

    def _accept_image(self, image: Tag) -> Optional[ImageLocator]:
        """Locator of a content scan, or None for decorative and marker images."""
        src = image.get("src")
        if not src:
            return None
        alt = image.get("alt") or ""

        if any(pattern.search(src) or pattern.search(alt) for pattern in self._denylist):
            return None

        minimum = self.settings.min_image_dimension
        for attribute in ("width", "height"):
            declared = parse_dimension(image.get(attribute))
            if declared is not None and declared < minimum:
                return None

        locator = parse_locator(src)
        if locator is None:
            return None
        if isinstance(locator, RemoteUrlLocator) and not self.settings.accept_remote_images:
            return None
        return locator

    def _build_candidate(self, image: Tag, locator: ImageLocator, digest_date: Optional[date],
                         scan_keys: Set[str], positions: Dict[int, int]) -> MailPieceCandidate:
        context = _TileContext(
            image=image,
            key=str(locator),
            container=closest(image, CONTAINER_TAGS),
            table=closest(image, ("table",)),
            row=closest(image, ("tr",)),
            scan_keys=scan_keys,
            positions=positions,
        )

        sender = None
        for resolver in self._sender_resolvers:
            sender = resolver(context)
            if sender:
                logger.debug("Sender resolved", image_locator=context.key, strategy=resolver.__name__)
                break

        section_match = self._classify_section(image)
        section = section_match.section if section_match is not None else None
        delivery_date = self._resolve_delivery_date(section_match, image, digest_date)

        return MailPieceCandidate(
            image_locator=locator,
            sender_guess=sender or None,
            delivery_date=delivery_date,
            section_hint=section
        )

    # Digest date strategies

    def _date_from_tracking_pixel(self, soup: BeautifulSoup, reference_date: date) -> Optional[date]:
        wanted = [param.lower() for param in self.template.tracking_date_params]
        for image in soup.find_all("img"):
            src = image.get("src") or ""
            if "?" not in src:
                continue
            try:
                query = parse_qs(urlparse(src).query)
            except ValueError:
                continue
            params = {key.lower(): values for key, values in query.items()}
            for name in wanted:
                for value in params.get(name, []):
                    parsed = self._parse_tracking_value(value)
                    if parsed is not None:
                        return parsed
        return None

    def _parse_tracking_value(self, value: str) -> Optional[date]:
        value = value.strip()
        for fmt in self.template.tracking_date_formats:
            try:
                return datetime.strptime(value, fmt).date()
            except ValueError:
                continue
        return None

    def _date_from_marker_elements(self, soup: BeautifulSoup, reference_date: date) -> Optional[date]:
        selectors = self.template.date_marker_selectors
        if not selectors.get("day") or not selectors.get("month"):
            return None

        day_el = soup.select_one(selectors["day"])
        month_el = soup.select_one(selectors["month"])
        if day_el is None or month_el is None:
            return None

        day_text = element_text(day_el)
        month_text = element_text(month_el).rstrip(".")
        if not day_text.isdigit() or not month_text:
            return None

        year_text = None
        if selectors.get("year"):
            year_el = soup.select_one(selectors["year"])
            year_text = element_text(year_el) or None
            if year_text and not year_text.isdigit():
                year_text = None

        found = parse_loose_date(" ".join(filter(None, (month_text, day_text, year_text))), reference_date)
        if found is None or year_text:
            return found
        return roll_back_year(found, reference_date)

    def _date_from_body_text(self, soup: BeautifulSoup, reference_date: date) -> Optional[date]:
        text = element_text(soup.body or soup)
        if not text:
            return None

        for pattern in (DIGEST_FOR_SHORT_DATE, WEEKDAY_SHORT_DATE):
            match = pattern.search(text)
            if match:
                found = parse_loose_date(match.group("date"), reference_date)
                if found:
                    return found if match.group("year") else roll_back_year(found, reference_date)

        for pattern in (WEEKDAY_DAY_MONTH_YEAR, WEEKDAY_MONTH_DAY_YEAR):
            match = pattern.search(text)
            if match:
                found = parse_loose_date(match.group("date"), reference_date)
                if found:
                    return found
        return None

    # Sender strategies, in priority order

    def _sender_from_table_label(self, ctx: _TileContext) -> Optional[str]:
        """Campaign sender label inside the enclosing table."""
        if ctx.table is None:
            return None
        labels = [label for label in ctx.table.select(self.template.sender_label_selector) if element_text(label)]
        if not labels:
            return None
        if len(labels) == 1 and not self._holds_other_scan(ctx.table, ctx):
            return self._clean_sender(element_text(labels[0]))

        # the table spans several tiles: take the nearest label above the image
        image_position = ctx.positions.get(id(ctx.image), 0)
        preceding = [label for label in labels if ctx.positions.get(id(label), 0) < image_position]
        if not preceding:
            return None
        nearest = max(preceding, key=lambda label: ctx.positions.get(id(label), 0))
        return self._clean_sender(element_text(nearest))

    def _sender_from_ancestor_label(self, ctx: _TileContext) -> Optional[str]:
        """Campaign sender label found walking up from the image."""
        for ancestor in iter_ancestors(ctx.image, self.settings.sender_ancestor_depth):
            if self._holds_other_scan(ancestor, ctx):
                return None
            labels = [label for label in ancestor.select(self.template.sender_label_selector) if element_text(label)]
            if len(labels) == 1:
                return self._clean_sender(element_text(labels[0]))
            if len(labels) > 1:
                return None
        return None

    def _sender_from_table_rows(self, ctx: _TileContext) -> Optional[str]:
        """``FROM:`` text in any row of a single-tile table."""
        if ctx.table is None or self._holds_other_scan(ctx.table, ctx):
            return None
        for row in ctx.table.find_all("tr"):
            sender = self._match_from_pattern(element_text(row))
            if sender:
                return sender
        return None

    def _sender_from_row(self, ctx: _TileContext) -> Optional[str]:
        if ctx.row is None:
            return None
        return self._match_from_pattern(element_text(ctx.row))

    def _sender_from_ancestor_text(self, ctx: _TileContext) -> Optional[str]:
        """``FROM:`` text in the container or its nearest ancestors."""
        if ctx.container is None:
            return None
        scopes = [ctx.container] + list(iter_ancestors(ctx.container, self.settings.sender_ancestor_depth - 1))
        for scope in scopes:
            if self._holds_other_scan(scope, ctx):
                return None
            sender = self._match_from_pattern(element_text(scope))
            if sender:
                return sender
        return None

    def _sender_from_siblings(self, ctx: _TileContext) -> Optional[str]:
        if ctx.container is None:
            return None
        for sibling in sibling_elements(ctx.container):
            if self._holds_other_scan(sibling, ctx):
                continue
            sender = self._match_from_pattern(element_text(sibling))
            if sender:
                return sender
        return None

    def _sender_from_capitalized_phrase(self, ctx: _TileContext) -> Optional[str]:
        """First capitalized multi-word phrase that is not template boilerplate."""
        if ctx.container is None or self._holds_other_scan(ctx.container, ctx):
            return None
        for match in CAPITALIZED_PHRASE.finditer(element_text(ctx.container)):
            phrase = match.group(1).strip()
            if not 3 <= len(phrase) < 80:
                continue
            if self._is_boilerplate(phrase):
                continue
            return self._clean_sender(phrase)
        return None

    def _sender_from_container_text(self, ctx: _TileContext) -> Optional[str]:
        if ctx.container is None or self._holds_other_scan(ctx.container, ctx):
            return None
        cleaned = self._clean_sender(element_text(ctx.container)[:self.settings.sender_max_length])
        if not cleaned or len(cleaned) <= 2:
            return None
        if not cleaned[0].isupper() or self._is_boilerplate(cleaned):
            return None
        return cleaned

    def _match_from_pattern(self, text: str) -> Optional[str]:
        """Sender named after a ``FROM:`` prefix, cut at the first boilerplate word."""
        if not text:
            return None
        for match in FROM_PATTERN.finditer(text):
            sender = match.group(1)
            if self._boilerplate is not None:
                boilerplate = self._boilerplate.search(sender)
                if boilerplate:
                    sender = sender[:boilerplate.start()]
            sender = self._clean_sender(sender.strip(" -|,;:"))
            if sender and len(sender) > 1:
                return sender
        return None

    def _holds_other_scan(self, element: Tag, ctx: _TileContext) -> bool:
        """True when ``element`` also contains another tile's scan."""
        for image in element.find_all("img"):
            locator = parse_locator(image.get("src"))
            if locator is None:
                continue
            key = str(locator)
            if key != ctx.key and key in ctx.scan_keys:
                return True
        return False

    def _is_boilerplate(self, text: str) -> bool:
        return bool(self._boilerplate and self._boilerplate.search(text))

    def _clean_sender(self, text: str) -> Optional[str]:
        cleaned = TRAILING_CAMPAIGN.sub("", normalize_whitespace(text)).strip()
        cleaned = cleaned[:self.settings.sender_max_length].strip()
        return cleaned or None

    # Section and delivery date

    def _classify_section(self, image: Tag) -> Optional[_SectionMatch]:
        for resolver in self._section_resolvers:
            match = resolver(image)
            if match is not None:
                return match
        return None

    def _section_from_attributes(self, image: Tag) -> Optional[_SectionMatch]:
        """Nearest ancestor whose id or class carries a section marker."""
        markers = [
            (SectionHint(name), marker.attributes)
            for name, marker in self.template.section_markers.items()
            if name in SECTION_NAMES and marker.attributes
        ]
        for ancestor in iter_ancestors(image, self.settings.section_ancestor_depth):
            attributes = attribute_text(ancestor)
            if not attributes:
                continue
            for section, needles in markers:
                if any(needle in attributes for needle in needles):
                    return _SectionMatch(section=section, element=ancestor)
        return None

    def _section_from_heading_text(self, image: Tag) -> Optional[_SectionMatch]:
        """Nearest section heading text preceding the image."""
        if not self._section_text:
            return None
        for text in image.find_all_previous(string=True):
            if not isinstance(text, NavigableString) or not text.strip():
                continue
            for section, pattern in self._section_text:
                if pattern.search(str(text)):
                    return _SectionMatch(section=section, heading=text)
        return None

    def _resolve_delivery_date(self, match: Optional[_SectionMatch], image: Tag,
                               digest_date: Optional[date]) -> Optional[date]:
        if match is None or match.section != SectionHint.THIS_WEEK:
            return digest_date

        if match.element is not None:
            label_text, section_text = self._week_text_in_element(match.element)
        elif match.heading is not None:
            label_text, section_text = self._week_text_after_heading(match.heading, image)
        else:
            return digest_date

        week_date = parse_month_day_year(label_text) or parse_month_day_year(section_text)
        return week_date or digest_date

    def _week_text_in_element(self, element: Tag) -> Tuple[str, str]:
        """Week label text and full text of a marked section element."""
        label_text = ""
        if self.template.week_label_selector:
            label_text = element_text(element.select_one(self.template.week_label_selector))
        return label_text, element_text(element)

    def _week_text_after_heading(self, heading: NavigableString, image: Tag) -> Tuple[str, str]:
        """Week label text and plain text between a section heading and the image.

        Text before the heading belongs to other sections and is never read.
        """
        tags_between: Set[int] = set()
        texts = [str(heading)]
        for element in heading.next_elements:
            if element is image:
                break
            if isinstance(element, Tag):
                tags_between.add(id(element))
            elif isinstance(element, NavigableString):
                texts.append(str(element))
        section_text = normalize_whitespace(" ".join(texts))

        label_text = ""
        if self.template.week_label_selector:
            root = image
            while root.parent is not None:
                root = root.parent
            for label in root.select(self.template.week_label_selector):
                if id(label) in tags_between:
                    label_text = element_text(label)
                    break
        return label_text, section_text
