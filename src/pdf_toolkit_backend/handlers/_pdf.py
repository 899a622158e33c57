"""Shared pypdf/reportlab helpers for the PDF handlers."""

from __future__ import annotations

import base64
import binascii
import io
import re
import zipfile
from typing import Callable, Iterable, List, Sequence, Tuple

from PIL import Image, UnidentifiedImageError
from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.errors import PyPdfError
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from ..errors import CorruptInput, InvalidOption
from .base import SourceFile

PDF_CONTENT_TYPE = "application/pdf"
ZIP_CONTENT_TYPE = "application/zip"

DATA_URL_PATTERN = re.compile(r"^data:[^;,]*;base64,", re.IGNORECASE)
RANGE_PATTERN = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")


def open_pdf(source: SourceFile, allow_encrypted: bool = False) -> PdfReader:
    """Parse a source PDF, rejecting encrypted documents unless explicitly allowed."""
    try:
        reader = PdfReader(io.BytesIO(source.content))
        encrypted = reader.is_encrypted
    except (PyPdfError, ValueError, OSError) as exc:
        raise CorruptInput(f"{source.name} is not a readable PDF: {exc}") from exc
    if encrypted and not allow_encrypted:
        raise CorruptInput(f"{source.name} is password protected; unlock it first")
    return reader


def page_count(reader: PdfReader, source: SourceFile) -> int:
    try:
        return len(reader.pages)
    except (PyPdfError, ValueError, KeyError) as exc:
        raise CorruptInput(f"Cannot read the page tree of {source.name}: {exc}") from exc


def copy_metadata(writer: PdfWriter, reader: PdfReader) -> None:
    metadata = reader.metadata
    if metadata:
        writer.add_metadata({key: str(value) for key, value in metadata.items()})


def copy_pages(reader: PdfReader, indices: Iterable[int]) -> PdfWriter:
    writer = PdfWriter()
    for index in indices:
        writer.add_page(reader.pages[index])
    return writer


def write_pdf(writer: PdfWriter) -> bytes:
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def parse_page_ranges(ranges: str, total_pages: int) -> List[List[int]]:
    """
    Parse a 1-based range string such as ``"1-3,5,7-9"`` into 0-based page groups.

    Each comma-separated item becomes one group, in the order given.
    """
    groups: List[List[int]] = []
    for item in str(ranges).split(","):
        if not item.strip():
            continue
        match = RANGE_PATTERN.match(item)
        if not match:
            raise InvalidOption(f"Invalid page range: {item.strip()!r}")
        start = int(match.group(1))
        end = int(match.group(2) or start)
        if start < 1 or end < start or end > total_pages:
            raise InvalidOption(f"Page range {item.strip()!r} is outside 1-{total_pages}")
        groups.append(list(range(start - 1, end)))
    if not groups:
        raise InvalidOption("No page ranges given")
    return groups


def parse_color(value: str, key: str = "color") -> colors.Color:
    try:
        return colors.HexColor(str(value))
    except (ValueError, TypeError) as exc:
        raise InvalidOption(f"Option '{key}' must be a hex colour such as '#808080', got {value!r}") from exc


def decode_image(data: str, key: str = "image") -> ImageReader:
    """Decode a base64 (optionally data-URL) image payload into a reportlab image."""
    payload = DATA_URL_PATTERN.sub("", str(data).strip())
    try:
        raw = base64.b64decode(payload, validate=True)
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (binascii.Error, ValueError, UnidentifiedImageError, OSError) as exc:
        raise InvalidOption(f"Option '{key}' is not a valid base64 encoded image") from exc
    return ImageReader(image)


def build_overlay(width: float, height: float, draw: Callable[[canvas.Canvas, float, float], None]) -> PageObject:
    """Render a single transparent page of the given size with reportlab."""
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(width, height))
    draw(pdf, width, height)
    pdf.showPage()
    pdf.save()
    buffer.seek(0)
    return PdfReader(buffer).pages[0]


def stamp_page(page: PageObject, draw: Callable[[canvas.Canvas, float, float], None]) -> None:
    """
    Merge a reportlab drawing over a page, honouring a non-zero mediabox origin.

    The page must already belong to a PdfWriter (pass the page returned by
    ``writer.add_page``).
    """
    box = page.mediabox
    overlay = build_overlay(float(box.width), float(box.height), draw)
    page.merge_translated_page(overlay, float(box.left), float(box.bottom))


def anchor_point(position: str, width: float, height: float, margin: float) -> Tuple[float, float, str]:
    """
    Resolve a named placement to a drawing point and horizontal alignment.

    Returns:
        (x, y, align) where align is one of "left", "center", "right"
    """
    vertical, _, horizontal = re.sub(r"([A-Z])", r" \1", position).lower().partition(" ")
    if position == "center":
        return width / 2, height / 2, "center"
    y = height - margin if vertical == "top" else margin
    if horizontal == "left":
        return margin, y, "left"
    if horizontal == "right":
        return width - margin, y, "right"
    return width / 2, y, "center"


def place_box(
    position: str, width: float, height: float, box_width: float, box_height: float, margin: float
) -> Tuple[float, float]:
    """Lower-left corner of a box placed at a named position inside the page."""
    if position == "center":
        return (width - box_width) / 2, (height - box_height) / 2
    x, y, align = anchor_point(position, width, height, margin)
    if align == "right":
        x -= box_width
    elif align == "center":
        x -= box_width / 2
    if y > height / 2:
        y -= box_height
    return x, y


def draw_aligned(pdf: canvas.Canvas, x: float, y: float, align: str, text: str) -> None:
    if align == "left":
        pdf.drawString(x, y, text)
    elif align == "right":
        pdf.drawRightString(x, y, text)
    else:
        pdf.drawCentredString(x, y, text)


def zip_archive(entries: Sequence[Tuple[str, bytes]]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for name, content in entries:
            archive.writestr(name, content)
    return buffer.getvalue()
