"""
Shared base utilities for PDF generation (reportlab).

Provides common styles, header/footer drawing, helper flowables and the
letterhead support: content placed into named rectangles and merged onto
a backdrop PDF with pypdf.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from io import BytesIO

from pypdf import PageObject, PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_LEFT, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm, mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import (
    BaseDocTemplate,
    Frame,
    PageTemplate,
    Flowable,
)

from errors import RenderingError

logger = logging.getLogger(__name__)


# ─── Colour palette ──────────────────────────────────────────────
CLR_BLACK = colors.black
CLR_GREY_LIGHT = colors.HexColor("#f5f5f5")
CLR_GREY_MID = colors.HexColor("#d9d9d9")
CLR_GREY_DARK = colors.HexColor("#666666")
CLR_TABLE_HEADER_BG = colors.HexColor("#e8e8e8")

# ─── Page metrics ─────────────────────────────────────────────────
PAGE_W, PAGE_H = A4
MARGIN_LEFT = 20 * mm
MARGIN_RIGHT = 20 * mm
MARGIN_TOP = 5 * mm
MARGIN_BOTTOM = 30 * mm

CONTENT_W = PAGE_W - MARGIN_LEFT - MARGIN_RIGHT

HEADER_HEIGHT = 70 * mm   # space reserved for header (address blocks, etc.)
FOOTER_HEIGHT = MARGIN_BOTTOM

FONT_NORMAL = "Helvetica"
FONT_BOLD = "Helvetica-Bold"


# ─── Reusable style factory ──────────────────────────────────────
def _base_styles(font_normal: str = FONT_NORMAL, font_bold: str = FONT_BOLD,
                 font_size: float = 9):
    """Return a dict of ParagraphStyles used by the invoice document."""
    ss = getSampleStyleSheet()
    leading = font_size * 1.22
    base = ParagraphStyle("Base", parent=ss["Normal"], fontName=font_normal,
                          fontSize=font_size, leading=leading, spaceAfter=0)
    small = font_size - 1.5
    return {
        "base": base,
        "title": ParagraphStyle("DocTitle", parent=base, fontName=font_bold,
                                fontSize=font_size + 7, leading=font_size + 10, spaceAfter=4),
        "normal": ParagraphStyle("Norm", parent=base, spaceAfter=2),
        "small": ParagraphStyle("Small", parent=base, fontSize=small, leading=small * 1.25, spaceAfter=1),
        "bold": ParagraphStyle("Bold", parent=base, fontName=font_bold),
        "right": ParagraphStyle("Right", parent=base, alignment=TA_RIGHT),
        "right_bold": ParagraphStyle("RightBold", parent=base, fontName=font_bold, alignment=TA_RIGHT),
        "table_header": ParagraphStyle("TH", parent=base, fontName=font_bold,
                                       fontSize=font_size - 0.5, leading=leading),
        "table_cell": ParagraphStyle("TC", parent=base, fontSize=font_size - 0.5, leading=leading),
        "table_cell_right": ParagraphStyle("TCR", parent=base, fontSize=font_size - 0.5,
                                           leading=leading, alignment=TA_RIGHT),
    }


# ─── Helper flowables ────────────────────────────────────────────
class HLine(Flowable):
    """A thin horizontal line with configurable width."""
    def __init__(self, width: float = CONTENT_W, thickness: float = 0.6,
                 color=CLR_BLACK, space_before=4, space_after=4):
        super().__init__()
        self.width = width
        self.thickness = thickness
        self.color = color
        self.space_before = space_before
        self.space_after = space_after
        self.height = self.space_before + self.thickness + self.space_after

    def draw(self):
        self.canv.saveState()
        self.canv.setStrokeColor(self.color)
        self.canv.setLineWidth(self.thickness)
        y = self.space_after
        self.canv.line(0, y, self.width, y)
        self.canv.restoreState()


# ─── Common page callbacks ───────────────────────────────────────
def _draw_header(canvas, doc, *,
                 issuer_name: str,
                 issuer_address: list[str],
                 recipient_lines: list[str],
                 meta_lines: list[tuple[str, str]]):
    """Draw the standard header block (sender line, recipient, meta)."""
    canvas.saveState()

    # ── Sender line (small, above recipient) ──
    sender_str = issuer_name
    if issuer_address:
        sender_str += " – " + " – ".join(issuer_address[:2])
    canvas.setFont(FONT_NORMAL, 6.5)
    canvas.setFillColor(CLR_GREY_DARK)
    y_sender = PAGE_H - MARGIN_TOP - 35 * mm
    canvas.drawString(MARGIN_LEFT, y_sender, sender_str)

    # ── Recipient block ──
    canvas.setFillColor(CLR_BLACK)
    y_recip = y_sender - 14
    for i, line in enumerate(recipient_lines[:6]):
        canvas.setFont(FONT_BOLD if i == 0 else FONT_NORMAL, 10)
        canvas.drawString(MARGIN_LEFT, y_recip - i * 13, line)

    # ── Meta block (right side) ──
    canvas.setFont(FONT_NORMAL, 8.5)
    x_meta_label = PAGE_W - MARGIN_RIGHT - 70 * mm
    x_meta_value = PAGE_W - MARGIN_RIGHT - 32 * mm
    y_meta_start = y_sender - 14
    for i, (label, value) in enumerate(meta_lines[:8]):
        y = y_meta_start - i * 12
        canvas.drawString(x_meta_label, y, label)
        canvas.drawString(x_meta_value, y, value)

    canvas.restoreState()


def _draw_footer(canvas, doc, *,
                 issuer_name: str,
                 issuer_address: list[str],
                 contact_lines: list[str],
                 bank_lines: list[str],
                 tax_number: str | None = None,
                 vat_id: str | None = None):
    """Draw the 3-column footer with business info."""
    canvas.saveState()

    y_line = MARGIN_BOTTOM - 2 * mm
    canvas.setStrokeColor(CLR_GREY_MID)
    canvas.setLineWidth(0.5)
    canvas.line(MARGIN_LEFT, y_line, PAGE_W - MARGIN_RIGHT, y_line)

    canvas.setFont(FONT_NORMAL, 6.5)
    canvas.setFillColor(CLR_GREY_DARK)

    col_w = CONTENT_W / 3
    x1 = MARGIN_LEFT
    x2 = MARGIN_LEFT + col_w
    x3 = MARGIN_LEFT + 2 * col_w

    left_lines = [issuer_name] + issuer_address[:3]
    mid_lines = list(contact_lines[:3])
    if tax_number:
        mid_lines.append(f"St.-Nr.: {tax_number}")
    if vat_id:
        mid_lines.append(f"USt-IdNr: {vat_id}")
    right_lines = bank_lines[:5]

    dy = 8.5
    y_start = y_line - 10
    for i, t in enumerate(left_lines):
        canvas.drawString(x1, y_start - i * dy, t)
    for i, t in enumerate(mid_lines):
        canvas.drawString(x2, y_start - i * dy, t)
    for i, t in enumerate(right_lines):
        canvas.drawString(x3, y_start - i * dy, t)

    canvas.drawRightString(PAGE_W - MARGIN_RIGHT, 8 * mm,
                           f"Seite {canvas.getPageNumber()}")

    canvas.restoreState()


# ─── Document builder helper ─────────────────────────────────────
def build_base_doc(buf: BytesIO, title: str, author: str,
                   on_page_callback, *, extra_top_space: float = 0):
    """Create a BaseDocTemplate with a single-column frame and the given on_page callback.
    Returns (doc, frame_width) so the caller can build the story.
    """
    frame_top = MARGIN_TOP + HEADER_HEIGHT + extra_top_space
    frame_height = PAGE_H - frame_top - MARGIN_BOTTOM

    frame = Frame(
        MARGIN_LEFT, MARGIN_BOTTOM,
        CONTENT_W, frame_height,
        leftPadding=0, rightPadding=0, topPadding=0, bottomPadding=0,
        id="main",
    )

    doc = BaseDocTemplate(
        buf, pagesize=A4,
        leftMargin=MARGIN_LEFT, rightMargin=MARGIN_RIGHT,
        topMargin=MARGIN_TOP, bottomMargin=MARGIN_BOTTOM,
        title=title, author=author,
        pageTemplates=[PageTemplate(id="default", frames=[frame], onPage=on_page_callback)],
    )
    return doc, CONTENT_W


# ─── Letterhead ──────────────────────────────────────────────────
@dataclass
class Rect:
    """Rectangle in points, origin bottom-left (reportlab coordinates)."""
    x: float
    y: float
    width: float
    height: float


@dataclass
class LetterheadRegion:
    """A placed region in centimetres, measured from the top-left page corner."""
    kind: str
    x_cm: Decimal
    y_cm: Decimal
    width_cm: Decimal
    height_cm: Decimal
    h_align: str = "left"
    font_size_pt: Decimal = Decimal("10")
    line_spacing: Decimal = Decimal("1.2")
    has_page2: bool = False
    x2_cm: Decimal | None = None
    y2_cm: Decimal | None = None
    width2_cm: Decimal | None = None
    height2_cm: Decimal | None = None

    @property
    def alignment(self):
        return {"right": TA_RIGHT, "center": TA_CENTER}.get(self.h_align, TA_LEFT)

    @property
    def leading(self) -> float:
        return float(self.font_size_pt) * float(self.line_spacing or 1)


@dataclass
class LetterheadLayout:
    page_width_cm: Decimal
    page_height_cm: Decimal
    regions: dict
    backdrop_path: str | None = None
    font_normal_path: str | None = None
    font_bold_path: str | None = None
    font_key: str = "letterhead"

    @property
    def page_size(self) -> tuple[float, float]:
        return float(self.page_width_cm) * cm, float(self.page_height_cm) * cm


def region_rect(layout: LetterheadLayout, region: LetterheadRegion, *, page2: bool = False) -> Rect:
    """Convert a region (top-left based, cm) to a reportlab rectangle.

    Raises RenderingError when the rectangle is empty or leaves the page.
    """
    if page2 and region.has_page2:
        values = (region.x2_cm, region.y2_cm, region.width2_cm, region.height2_cm)
    else:
        values = (region.x_cm, region.y_cm, region.width_cm, region.height_cm)
    if any(v is None for v in values):
        raise RenderingError(f"Region '{region.kind}' is incomplete")
    x, y, w, h = (float(v) for v in values)
    page_w, page_h = float(layout.page_width_cm), float(layout.page_height_cm)
    if w <= 0 or h <= 0:
        raise RenderingError(f"Region '{region.kind}' has no area")
    if x < 0 or y < 0 or x + w > page_w + 0.01 or y + h > page_h + 0.01:
        raise RenderingError(f"Region '{region.kind}' lies outside the page")
    return Rect(x * cm, (page_h - y - h) * cm, w * cm, h * cm)


def register_letterhead_fonts(layout: LetterheadLayout) -> tuple[str, str]:
    """Register the letterhead's TrueType fonts; fall back to Helvetica when unset."""
    names = []
    for suffix, path, fallback in (("normal", layout.font_normal_path, FONT_NORMAL),
                                   ("bold", layout.font_bold_path, FONT_BOLD)):
        if not path:
            names.append(fallback)
            continue
        name = f"{layout.font_key}-{suffix}"
        if name not in pdfmetrics.getRegisteredFontNames():
            try:
                pdfmetrics.registerFont(TTFont(name, path))
            except Exception as exc:
                logger.error("Cannot register font %s from %s: %s", name, path, exc)
                raise RenderingError(f"Font {os.path.basename(path)} is not usable") from exc
        names.append(name)
    return names[0], names[1]


def draw_region_lines(canvas, rect: Rect, region: LetterheadRegion, lines: list[str],
                      font_normal: str, font_bold: str, *, bold_first: bool = False):
    """Write text lines top-down into a rectangle, dropping what does not fit."""
    canvas.saveState()
    size = float(region.font_size_pt)
    leading = region.leading
    y = rect.y + rect.height - size
    for i, line in enumerate(lines):
        if y < rect.y:
            break
        canvas.setFont(font_bold if (bold_first and i == 0) else font_normal, size)
        if region.h_align == "right":
            canvas.drawRightString(rect.x + rect.width, y, line)
        elif region.h_align == "center":
            canvas.drawCentredString(rect.x + rect.width / 2, y, line)
        else:
            canvas.drawString(rect.x, y, line)
        y -= leading
    canvas.restoreState()


def build_letterhead_doc(buf: BytesIO, layout: LetterheadLayout, title: str, author: str,
                         on_first_page, on_later_pages):
    """Doc with the main area of the letterhead as frame; page 2+ may use another rectangle."""
    main = layout.regions.get("main_area")
    if main is None:
        raise RenderingError("Letterhead has no main_area region")
    first = region_rect(layout, main)
    later = region_rect(layout, main, page2=True)

    def _frame(rect, frame_id):
        return Frame(rect.x, rect.y, rect.width, rect.height,
                     leftPadding=0, rightPadding=0, topPadding=0, bottomPadding=0, id=frame_id)

    doc = BaseDocTemplate(
        buf, pagesize=layout.page_size, title=title, author=author,
        leftMargin=0, rightMargin=0, topMargin=0, bottomMargin=0,
        pageTemplates=[
            PageTemplate(id="first", frames=[_frame(first, "main")], onPage=on_first_page),
            PageTemplate(id="later", frames=[_frame(later, "main2")], onPage=on_later_pages),
        ],
    )
    return doc, first.width


def apply_backdrop(content_pdf: bytes, backdrop_path: str) -> bytes:
    """Put every content page on top of the letterhead backdrop.

    Page 1 uses the backdrop's first page, later pages its second page
    when there is one.
    """
    if not os.path.isfile(backdrop_path):
        raise RenderingError(f"Letterhead backdrop {os.path.basename(backdrop_path)} is missing")
    try:
        backdrop = PdfReader(backdrop_path)
        content = PdfReader(BytesIO(content_pdf))
        writer = PdfWriter()
        for index, page in enumerate(content.pages):
            bg = backdrop.pages[0 if index == 0 or len(backdrop.pages) == 1 else 1]
            merged = PageObject.create_blank_page(
                width=page.mediabox.width, height=page.mediabox.height,
            )
            merged.merge_page(bg)
            merged.merge_page(page)
            writer.add_page(merged)
        out = BytesIO()
        writer.write(out)
    except RenderingError:
        raise
    except Exception as exc:
        logger.error("Merging letterhead backdrop %s failed: %s", backdrop_path, exc)
        raise RenderingError("Letterhead backdrop could not be merged") from exc
    return out.getvalue()


# ─── Price formatting helpers ────────────────────────────────────
def _fmt_german(value: Decimal, places: int = 2) -> str:
    quant = Decimal(1).scaleb(-places)
    text = f"{Decimal(value).quantize(quant, rounding=ROUND_HALF_UP):,.{places}f}"
    return text.replace(",", "X").replace(".", ",").replace("X", ".")


def fmt_eur(value: Decimal, currency: str = "EUR") -> str:
    """Format an amount German style, e.g. 1.234,50 €."""
    symbol = "€" if currency == "EUR" else currency
    return f"{_fmt_german(value or Decimal('0'))} {symbol}"


def fmt_percent(value: Decimal) -> str:
    text = _fmt_german(value or Decimal("0"))
    if text.endswith(",00"):
        text = text[:-3]
    return f"{text} %"


def fmt_quantity(value: Decimal) -> str:
    text = _fmt_german(value or Decimal("0"), 4)
    return text.rstrip("0").rstrip(",")
