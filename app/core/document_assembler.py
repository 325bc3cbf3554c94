"""Production guide PDF compositor.

Typesets text sections into a paginated PDF without touching their content.
Work happens in two passes:

1. ``plan_document`` classifies and wraps every source line and places the
   resulting fragments on pages. The plan is plain data, so it can be
   inspected (every source line's fragments join back to the exact line).
2. ``render_plan`` draws the plan with PyMuPDF and returns the PDF bytes.

Line styling:
- heading: ALL CAPS (6-79 chars), a structural keyword prefix (SEGMENT,
  LAYER, PART, ...), a ``#`` markdown heading, or ``1. Title``
- asset name: ends in a media/document extension or looks like ``AB_Video_01.mp4``
- separator: 10+ of ``=``, ``-`` or ``_``; rendered as a gap, never as text

Text is written through ``fitz.TextWriter`` so characters outside Latin-1
survive into the PDF (and its extractable text) unchanged.
"""

import asyncio
import re
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from functools import lru_cache
from typing import Any, Iterable

from app.core.logging import get_logger

logger = get_logger(__name__)

# US Letter, points
PAGE_WIDTH = 612.0
PAGE_HEIGHT = 792.0
MARGIN = 50.0
TEXT_WIDTH = PAGE_WIDTH - 2 * MARGIN
BOTTOM_LIMIT = PAGE_HEIGHT - 60

BODY_SIZE = 10.0
LINE_SPACING = 1.4
LINE_HEIGHT = BODY_SIZE * LINE_SPACING
HEADING_SIZE = BODY_SIZE + 2
HEADING_BEFORE = 8.0
HEADING_AFTER = 4.0
SEPARATOR_GAP = LINE_HEIGHT * 0.5

BANNER_HEIGHT = 60.0
SECTION_START_Y = 100.0
RUNNING_HEADER_Y = 30.0
CONTINUATION_START_Y = MARGIN + 20
FOOTER_Y = PAGE_HEIGHT - 30

# Primary faces; glyphs they lack (arrows, check marks, emoji, CJK) come from
# MuPDF's embedded Noto fallback fonts, both when measuring and when drawing
BODY_FONT = "helv"
BOLD_FONT = "hebo"
MONO_FONT = "cour"

Color = tuple[int, int, int]

SECTION_COLORS: list[Color] = [(34, 197, 94), (249, 115, 22), (124, 58, 237)]
COVER_COLOR: Color = (139, 92, 246)
ASSET_COLOR: Color = (59, 130, 246)
TEXT_COLOR: Color = (0, 0, 0)
MUTED_COLOR: Color = (150, 150, 150)
SUBTLE_COLOR: Color = (100, 100, 100)
WHITE: Color = (255, 255, 255)


# =============================================================================
# Line classification
# =============================================================================


class LineKind(str, Enum):
    BLANK = "blank"
    SEPARATOR = "separator"
    HEADING = "heading"
    ASSET = "asset"
    BODY = "body"


_HEADING_KEYWORD = re.compile(r"^(SEGMENT|LAYER|PART|SECTION|CHAPTER|STEP|ASSET|VIDEO|AUDIO)", re.I)
_MARKDOWN_HEADING = re.compile(r"^#{1,3}\s")
_NUMBERED_HEADING = re.compile(r"^\d+\.\s+[A-Z]")
_ASSET_EXTENSION = re.compile(r"\.(mp4|mp3|png|jpg|jpeg|txt|pdf|mov|wav|webm|gif)$", re.I)
_ASSET_PREFIX = re.compile(r"^[A-Z]{2,}_[A-Za-z0-9_]+\.", re.I)
_SEPARATOR = re.compile(r"^[=\-_]{10,}$")


def is_heading(line: str) -> bool:
    trimmed = line.strip()
    if (
        trimmed == trimmed.upper()
        and any(ch.isalpha() for ch in trimmed)
        and 5 < len(trimmed) < 80
    ):
        return True
    return bool(
        _HEADING_KEYWORD.match(trimmed)
        or _MARKDOWN_HEADING.match(trimmed)
        or _NUMBERED_HEADING.match(trimmed)
    )


def is_asset_name(line: str) -> bool:
    trimmed = line.strip()
    return bool(_ASSET_EXTENSION.search(trimmed) or _ASSET_PREFIX.match(trimmed))


def is_separator(line: str) -> bool:
    return bool(_SEPARATOR.match(line.strip()))


def classify_line(line: str) -> LineKind:
    if not line.strip():
        return LineKind.BLANK
    if is_separator(line):
        return LineKind.SEPARATOR
    if is_heading(line):
        return LineKind.HEADING
    if is_asset_name(line):
        return LineKind.ASSET
    return LineKind.BODY


# =============================================================================
# Layout plan
# =============================================================================


@dataclass(frozen=True)
class DocumentSection:
    label: str
    text: str | None


@dataclass(frozen=True)
class Fragment:
    """A run of text drawn at a baseline position.

    ``section``/``line`` point back at the source line; decoration (cover,
    banners, running header, footer) has neither.
    """

    text: str
    x: float
    y: float
    fontname: str
    fontsize: float
    color: Color
    section: int | None = None
    line: int | None = None


@dataclass(frozen=True)
class Gap:
    """Vertical space standing in for a separator line."""

    y: float
    height: float
    section: int
    line: int


@dataclass(frozen=True)
class Band:
    x0: float
    y0: float
    x1: float
    y1: float
    color: Color


@dataclass
class PagePlan:
    number: int
    fragments: list[Fragment] = field(default_factory=list)
    gaps: list[Gap] = field(default_factory=list)
    bands: list[Band] = field(default_factory=list)


@dataclass
class DocumentPlan:
    title: str
    pages: list[PagePlan] = field(default_factory=list)

    def source_lines(self, section: int) -> dict[int, str]:
        """Rebuild ``section``'s placed lines from their fragments, by line index."""
        lines: dict[int, str] = {}
        for page in self.pages:
            for fragment in page.fragments:
                if fragment.section == section and fragment.line is not None:
                    lines[fragment.line] = lines.get(fragment.line, "") + fragment.text
        return lines

    def separator_lines(self, section: int) -> list[int]:
        return [gap.line for page in self.pages for gap in page.gaps if gap.section == section]


@lru_cache(maxsize=None)
def _font(fontname: str) -> Any:
    import fitz  # PyMuPDF

    return fitz.Font(fontname)


def text_width(text: str, fontname: str, fontsize: float) -> float:
    return _font(fontname).text_length(text, fontsize=fontsize)


_TOKEN = re.compile(r"\S+\s*|\s+")


def wrap_line(line: str, fontname: str, fontsize: float, max_width: float = TEXT_WIDTH) -> list[str]:
    """Split ``line`` into pieces that fit ``max_width``; ``"".join(pieces) == line``."""

    def fits(text: str) -> bool:
        return text_width(text.rstrip(), fontname, fontsize) <= max_width

    pieces: list[str] = []
    current = ""
    for token in _TOKEN.findall(line):
        if fits(current + token):
            current += token
            continue
        if current:
            pieces.append(current)
            current = ""
        # A single word wider than the line is hard-broken
        while not fits(token):
            cut = 1
            while cut < len(token) and fits(token[: cut + 1]):
                cut += 1
            pieces.append(token[:cut])
            token = token[cut:]
        current = token
    if current:
        pieces.append(current)
    return pieces or [line]


def _centered(
    text: str, y: float, fontname: str, fontsize: float, color: Color
) -> Fragment:
    x = (PAGE_WIDTH - text_width(text, fontname, fontsize)) / 2
    return Fragment(text=text, x=x, y=y, fontname=fontname, fontsize=fontsize, color=color)


class _Composer:
    """Cursor-driven placement of fragments onto pages."""

    def __init__(self, plan: DocumentPlan, studio_name: str):
        self.plan = plan
        self.studio_name = studio_name
        self.page: PagePlan | None = None
        self.y = MARGIN

    def new_page(self) -> PagePlan:
        self.page = PagePlan(number=len(self.plan.pages) + 1)
        self.plan.pages.append(self.page)
        self.y = MARGIN
        return self.page

    def section_page(self, label: str, color: Color) -> None:
        page = self.new_page()
        page.bands.append(Band(0, 0, PAGE_WIDTH, BANNER_HEIGHT, color))
        page.fragments.append(_centered(label.upper(), 38, BOLD_FONT, 20, WHITE))
        self.y = SECTION_START_Y

    def continuation_page(self) -> None:
        page = self.new_page()
        header = self.studio_name.upper()
        page.fragments.append(
            Fragment(header, MARGIN, RUNNING_HEADER_Y, BODY_FONT, 8, MUTED_COLOR)
        )
        title_x = PAGE_WIDTH - MARGIN - text_width(self.plan.title, BODY_FONT, 8)
        page.fragments.append(
            Fragment(self.plan.title, title_x, RUNNING_HEADER_Y, BODY_FONT, 8, MUTED_COLOR)
        )
        self.y = CONTINUATION_START_Y

    def place(self, fragment_text: str, fontname: str, fontsize: float, color: Color,
              section: int, line: int, height: float) -> None:
        if self.y + height > BOTTOM_LIMIT:
            self.continuation_page()
        self.page.fragments.append(
            Fragment(fragment_text, MARGIN, self.y, fontname, fontsize, color, section, line)
        )
        self.y += height

    def gap(self, height: float, section: int, line: int) -> None:
        self.page.gaps.append(Gap(self.y, height, section, line))
        self.y += height


def _place_cover(
    composer: _Composer,
    title: str,
    client_name: str,
    generated_on: str,
    labels: list[str],
) -> None:
    page = composer.new_page()
    add = page.fragments.append
    page.bands.append(Band(0, 0, PAGE_WIDTH, 150, COVER_COLOR))
    add(_centered(composer.studio_name.upper(), 60, BOLD_FONT, 24, WHITE))
    add(_centered("Content & Brand Agency", 85, BODY_FONT, 12, WHITE))
    add(_centered(title, 220, BOLD_FONT, 28, TEXT_COLOR))
    add(_centered(f"Prepared for: {client_name}", 260, BODY_FONT, 18, SUBTLE_COLOR))
    add(_centered(f"Generated: {generated_on}", 290, BODY_FONT, 12, SUBTLE_COLOR))
    add(_centered("Document Contents", 380, BOLD_FONT, 14, TEXT_COLOR))
    y = 410.0
    for number, label in enumerate(labels, start=1):
        add(_centered(f"Part {number}: {label}", y, BODY_FONT, 12, (80, 80, 80)))
        y += 20
    add(
        _centered(
            "This document contains proprietary content. Do not distribute.",
            PAGE_HEIGHT - 50,
            BODY_FONT,
            10,
            MUTED_COLOR,
        )
    )


def _place_section(composer: _Composer, index: int, section: DocumentSection) -> None:
    color = SECTION_COLORS[index % len(SECTION_COLORS)]
    composer.section_page(f"Part {index + 1}: {section.label}", color)

    if not section.text:
        logger.warning(f"Section '{section.label}' is empty; rendering header only")
        return

    for line_no, line in enumerate(section.text.split("\n")):
        kind = classify_line(line)
        if kind == LineKind.SEPARATOR:
            composer.gap(SEPARATOR_GAP, index, line_no)
            continue
        if kind == LineKind.BLANK:
            if line:
                composer.place(line, BODY_FONT, BODY_SIZE, TEXT_COLOR, index, line_no, LINE_HEIGHT)
            else:
                composer.y += LINE_HEIGHT
            continue

        if kind == LineKind.HEADING:
            fontname, fontsize, fill = BOLD_FONT, HEADING_SIZE, color
            composer.y += HEADING_BEFORE
        elif kind == LineKind.ASSET:
            fontname, fontsize, fill = MONO_FONT, BODY_SIZE, ASSET_COLOR
        else:
            fontname, fontsize, fill = BODY_FONT, BODY_SIZE, TEXT_COLOR

        height = fontsize * LINE_SPACING
        for piece in wrap_line(line, fontname, fontsize):
            composer.place(piece, fontname, fontsize, fill, index, line_no, height)

        if kind == LineKind.HEADING:
            composer.y += HEADING_AFTER


def _add_page_numbers(plan: DocumentPlan) -> None:
    for page in plan.pages[1:]:
        page.fragments.append(_centered(f"Page {page.number}", FOOTER_Y, BODY_FONT, 8, MUTED_COLOR))


def plan_document(
    sections: Iterable[DocumentSection],
    title: str,
    client_name: str,
    studio_name: str,
    generated_on: date | str,
) -> DocumentPlan:
    """Lay out the cover page and every section; no drawing happens here."""
    sections = list(sections)
    if isinstance(generated_on, date):
        generated_on = generated_on.strftime("%B %d, %Y")

    plan = DocumentPlan(title=title)
    composer = _Composer(plan, studio_name)
    _place_cover(composer, title, client_name, generated_on, [s.label for s in sections])
    for index, section in enumerate(sections):
        _place_section(composer, index, section)
    _add_page_numbers(plan)
    return plan


# =============================================================================
# Rendering
# =============================================================================


def _rgb(color: Color) -> tuple[float, float, float]:
    return tuple(channel / 255 for channel in color)


def render_plan(plan: DocumentPlan) -> bytes:
    """Draw ``plan`` with PyMuPDF and return the PDF bytes."""
    import fitz  # PyMuPDF

    doc = fitz.open()
    try:
        for page_plan in plan.pages:
            page = doc.new_page(width=PAGE_WIDTH, height=PAGE_HEIGHT)
            for band in page_plan.bands:
                page.draw_rect(
                    fitz.Rect(band.x0, band.y0, band.x1, band.y1),
                    color=None,
                    fill=_rgb(band.color),
                )
            # TextWriter embeds the fonts with a Unicode map, one writer per fill colour
            writers: dict[Color, Any] = {}
            for fragment in page_plan.fragments:
                writer = writers.get(fragment.color)
                if writer is None:
                    writer = writers[fragment.color] = fitz.TextWriter(page.rect)
                writer.append(
                    fitz.Point(fragment.x, fragment.y),
                    fragment.text,
                    font=_font(fragment.fontname),
                    fontsize=fragment.fontsize,
                )
            for color, writer in writers.items():
                writer.write_text(page, color=_rgb(color))
        doc.set_metadata({"title": plan.title, "creator": "studio-pipeline-engine"})
        return doc.tobytes(garbage=3, deflate=True)
    finally:
        doc.close()


def assemble_document(
    sections: Iterable[DocumentSection],
    title: str,
    client_name: str,
    studio_name: str = "Electric Studio",
    generated_on: date | str | None = None,
) -> bytes:
    """
    Build the production guide PDF.

    Args:
        sections: Ordered sections; empty text renders the section banner only
        title: Document title (cover + running header)
        client_name: Shown as "Prepared for"
        studio_name: Branding on the cover and running header
        generated_on: Cover date (defaults to today)

    Returns:
        PDF document bytes
    """
    plan = plan_document(
        sections,
        title=title,
        client_name=client_name,
        studio_name=studio_name,
        generated_on=generated_on or date.today(),
    )
    pdf_bytes = render_plan(plan)
    logger.info(f"Assembled '{title}': {len(plan.pages)} pages, {len(pdf_bytes)} bytes")
    return pdf_bytes


async def assemble_document_async(
    sections: Iterable[DocumentSection],
    title: str,
    client_name: str,
    studio_name: str = "Electric Studio",
    generated_on: date | str | None = None,
) -> bytes:
    """Run ``assemble_document`` in a worker thread; rendering is CPU-bound."""
    return await asyncio.to_thread(
        assemble_document,
        list(sections),
        title=title,
        client_name=client_name,
        studio_name=studio_name,
        generated_on=generated_on,
    )
