"""
Format conversion handlers.

Conversions into PDF render each input separately and concatenate the results
in request order. OOXML documents (.docx, .xlsx, .pptx) and HTML are laid out
as text and table flows with reportlab's platypus; legacy binary Office
formats are handed to a LibreOffice subprocess when one is installed.

Conversions out of PDF use MuPDF for text extraction and page rendering.
"""

from __future__ import annotations

import io
import logging
import shutil
import subprocess
import tempfile
import zipfile
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Sequence
from xml.sax.saxutils import escape

import pymupdf
from bs4 import BeautifulSoup
from docx import Document as WordDocument
from docx.opc.exceptions import PackageNotFoundError
from docx.table import Table as WordTable
from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from PIL import Image, UnidentifiedImageError
from pptx import Presentation
from pptx.enum.shapes import MSO_SHAPE_TYPE
from pptx.exc import PackageNotFoundError as PresentationNotFoundError
from pptx.util import Pt
from pypdf import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image as FlowImage
from reportlab.platypus import PageBreak, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from ..errors import BackendConversionFailure, CorruptInput, UnsupportedInputType
from ._pdf import PDF_CONTENT_TYPE, ZIP_CONTENT_TYPE, open_pdf, write_pdf, zip_archive
from .base import OperationHandler, OperationResult, SourceFile, int_option

logger = logging.getLogger(__name__)

DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
XLSX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
PPTX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.presentationml.presentation"
JPEG_CONTENT_TYPE = "image/jpeg"

LEGACY_OFFICE_EXTENSIONS = frozenset({".doc", ".xls", ".ppt"})
HTML_BLOCK_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6", "p", "li", "pre", "blockquote", "td", "th"]
MARGIN = 48

STYLES = getSampleStyleSheet()


def _text(value: Any) -> str:
    return escape("" if value is None else str(value)).replace("\n", "<br/>")


def _render_story(story: List[Any], pagesize=A4, title: str = "") -> bytes:
    buffer = io.BytesIO()
    document = SimpleDocTemplate(
        buffer,
        pagesize=pagesize,
        leftMargin=MARGIN,
        rightMargin=MARGIN,
        topMargin=MARGIN,
        bottomMargin=MARGIN,
        title=title,
    )
    document.build(story or [Spacer(1, 12)])
    return buffer.getvalue()


def _grid_table(rows: List[List[Any]], available_width: float, font_size: int = 9) -> Table:
    style = STYLES["BodyText"].clone("cell", fontSize=font_size, leading=font_size + 2)
    columns = max(len(row) for row in rows)
    data = [[Paragraph(_text(cell), style) for cell in row] + [""] * (columns - len(row)) for row in rows]
    table = Table(data, colWidths=[available_width / columns] * columns, repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]
        )
    )
    return table


def _flow_image(blob: bytes, max_width: float, max_height: float) -> FlowImage:
    width, height = ImageReader(io.BytesIO(blob)).getSize()
    scale = min(max_width / width, max_height / height, 1.0)
    return FlowImage(io.BytesIO(blob), width=width * scale, height=height * scale)


class ToPdfHandler(OperationHandler):
    """Base for conversions into PDF; several inputs are concatenated in order."""

    category = "convert"
    max_files = None

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        writer = PdfWriter()
        for source in sources:
            if source.extension in LEGACY_OFFICE_EXTENSIONS:
                rendered = self._libreoffice(source)
            else:
                rendered = self.render(source)
            writer.append(PdfReader(io.BytesIO(rendered)))

        name = sources[0].stem if len(sources) == 1 else "converted"
        return OperationResult(
            content=write_pdf(writer),
            filename=f"converted_{name}.pdf",
            content_type=PDF_CONTENT_TYPE,
            metadata={"conversionType": self.tool_id, "pageCount": len(writer.pages)},
        )

    def render(self, source: SourceFile) -> bytes:
        raise UnsupportedInputType(f"{self.tool_id} cannot convert {source.extension} files")

    def _libreoffice(self, source: SourceFile) -> bytes:
        binary = self.conversion.libreoffice_path or shutil.which("soffice") or shutil.which("libreoffice")
        if not binary:
            raise BackendConversionFailure(
                f"Converting {source.extension} files requires LibreOffice (soffice) on the server"
            )

        with tempfile.TemporaryDirectory() as workdir:
            input_path = Path(workdir) / f"input{source.extension}"
            input_path.write_bytes(source.content)
            command = [binary, "--headless", "--nologo", "--convert-to", "pdf", "--outdir", workdir, str(input_path)]
            logger.info(f"Running LibreOffice for {source.name}")
            try:
                subprocess.run(command, check=True, capture_output=True, timeout=self.conversion.timeout_seconds)
            except subprocess.TimeoutExpired as exc:
                raise BackendConversionFailure(f"LibreOffice timed out converting {source.name}") from exc
            except (subprocess.CalledProcessError, OSError) as exc:
                raise BackendConversionFailure(f"LibreOffice failed to convert {source.name}: {exc}") from exc

            output_path = input_path.with_suffix(".pdf")
            if not output_path.exists():
                raise BackendConversionFailure(f"LibreOffice produced no PDF for {source.name}")
            return output_path.read_bytes()


class WordToPdfHandler(ToPdfHandler):
    tool_id = "word-to-pdf"
    accepted_extensions = (".doc", ".docx")

    def render(self, source: SourceFile) -> bytes:
        try:
            document = WordDocument(io.BytesIO(source.content))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise CorruptInput(f"{source.name} is not a readable Word document") from exc

        available = A4[0] - 2 * MARGIN
        story: List[Any] = []
        for block in document.iter_inner_content():
            if isinstance(block, WordTable):
                rows = [[cell.text for cell in row.cells] for row in block.rows]
                if rows:
                    story.extend([_grid_table(rows, available), Spacer(1, 8)])
                continue
            style_name = (block.style.name if block.style is not None else "").replace(" ", "")
            style = STYLES[style_name] if style_name in STYLES else STYLES["BodyText"]
            story.append(Paragraph(_text(block.text), style) if block.text.strip() else Spacer(1, 8))
        return _render_story(story, title=source.stem)


class ExcelToPdfHandler(ToPdfHandler):
    tool_id = "excel-to-pdf"
    accepted_extensions = (".xls", ".xlsx")

    def render(self, source: SourceFile) -> bytes:
        try:
            workbook = load_workbook(io.BytesIO(source.content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise CorruptInput(f"{source.name} is not a readable Excel workbook") from exc

        pagesize = landscape(A4)
        available = pagesize[0] - 2 * MARGIN
        story: List[Any] = []
        for sheet in workbook.worksheets:
            rows = [list(row) for row in sheet.iter_rows(values_only=True)]
            while rows and all(cell is None for cell in rows[-1]):
                rows.pop()
            if story:
                story.append(PageBreak())
            story.append(Paragraph(_text(sheet.title), STYLES["Heading2"]))
            if rows:
                story.append(_grid_table(rows, available, font_size=8))
        workbook.close()
        return _render_story(story, pagesize=pagesize, title=source.stem)


class PowerpointToPdfHandler(ToPdfHandler):
    tool_id = "powerpoint-to-pdf"
    accepted_extensions = (".ppt", ".pptx")

    def render(self, source: SourceFile) -> bytes:
        try:
            presentation = Presentation(io.BytesIO(source.content))
        except (PresentationNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as exc:
            raise CorruptInput(f"{source.name} is not a readable PowerPoint presentation") from exc

        pagesize = landscape(A4)
        max_width, max_height = pagesize[0] - 2 * MARGIN, pagesize[1] / 2
        story: List[Any] = []
        for number, slide in enumerate(presentation.slides, start=1):
            if number > 1:
                story.append(PageBreak())
            title_shape = slide.shapes.title
            title = title_shape.text if title_shape is not None and title_shape.text else f"Slide {number}"
            story.append(Paragraph(_text(title), STYLES["Heading1"]))
            for shape in slide.shapes:
                if shape == title_shape:
                    continue
                if shape.shape_type == MSO_SHAPE_TYPE.PICTURE:
                    story.append(_flow_image(shape.image.blob, max_width, max_height))
                elif shape.has_text_frame:
                    for paragraph in shape.text_frame.paragraphs:
                        text = "".join(run.text for run in paragraph.runs)
                        if text.strip():
                            story.append(Paragraph(_text(text), STYLES["Bullet"], bulletText="•"))
        return _render_story(story, pagesize=pagesize, title=source.stem)


class ImagesToPdfHandler(ToPdfHandler):
    tool_id = "jpg-to-pdf"
    accepted_extensions = (".jpg", ".jpeg", ".png")

    def render(self, source: SourceFile) -> bytes:
        try:
            image = Image.open(io.BytesIO(source.content))
            image.load()
        except (UnidentifiedImageError, OSError) as exc:
            raise CorruptInput(f"{source.name} is not a readable image") from exc

        if image.mode != "RGB":
            image = image.convert("RGB")
        buffer = io.BytesIO()
        image.save(buffer, format="PDF", resolution=float(self.conversion.dpi))
        return buffer.getvalue()


class HtmlToPdfHandler(ToPdfHandler):
    tool_id = "html-to-pdf"
    accepted_extensions = (".html", ".htm")

    def render(self, source: SourceFile) -> bytes:
        soup = BeautifulSoup(source.content, "html.parser")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()

        story: List[Any] = []
        title = soup.title.get_text(strip=True) if soup.title else source.stem
        if soup.title:
            story.append(Paragraph(_text(title), STYLES["Title"]))
            soup.title.decompose()

        blocks = [tag for tag in soup.find_all(HTML_BLOCK_TAGS) if tag.find_parent(HTML_BLOCK_TAGS) is None]
        if blocks:
            for tag in blocks:
                text = tag.get_text(" ", strip=True)
                if not text:
                    continue
                if tag.name.startswith("h"):
                    style = STYLES[f"Heading{min(int(tag.name[1]), 6)}"]
                    story.append(Paragraph(_text(text), style))
                elif tag.name == "li":
                    story.append(Paragraph(_text(text), STYLES["Bullet"], bulletText="•"))
                elif tag.name == "pre":
                    story.append(Paragraph(_text(tag.get_text()), STYLES["Code"]))
                else:
                    story.append(Paragraph(_text(text), STYLES["BodyText"]))
        else:
            for line in soup.get_text("\n").splitlines():
                if line.strip():
                    story.append(Paragraph(_text(line.strip()), STYLES["BodyText"]))
        return _render_story(story, title=title)


class FromPdfHandler(OperationHandler):
    """Base for conversions out of PDF, backed by MuPDF."""

    category = "convert"

    def _open(self, source: SourceFile) -> pymupdf.Document:
        # Encrypted and unreadable inputs are rejected by open_pdf first
        open_pdf(source)
        try:
            return pymupdf.open(stream=source.content, filetype="pdf")
        except (RuntimeError, ValueError) as exc:
            raise CorruptInput(f"{source.name} is not a readable PDF: {exc}") from exc

    def _dpi(self, options: Mapping[str, Any]) -> int:
        return int_option(options, "dpi", self.conversion.dpi, minimum=36)

    def _page_images(self, document: pymupdf.Document, dpi: int) -> Iterable[bytes]:
        for page in document:
            yield page.get_pixmap(dpi=dpi).tobytes("png")


class PdfToWordHandler(FromPdfHandler):
    tool_id = "pdf-to-word"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        output = WordDocument()
        with self._open(source) as document:
            pages = document.page_count
            for index, page in enumerate(document):
                for line in (page.get_text("text") or "").splitlines():
                    output.add_paragraph(line)
                if index != pages - 1:
                    output.add_page_break()

        buffer = io.BytesIO()
        output.save(buffer)
        return OperationResult(
            content=buffer.getvalue(),
            filename=f"{source.stem}.docx",
            content_type=DOCX_CONTENT_TYPE,
            metadata={"conversionType": self.tool_id, "pageCount": pages},
        )


class PdfToExcelHandler(FromPdfHandler):
    """
    One worksheet per page.

    Tables detected by MuPDF are copied cell by cell; pages without tables fall
    back to one row per text line, split into cells on tab stops.
    """

    tool_id = "pdf-to-excel"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        workbook = Workbook()
        workbook.remove(workbook.active)
        with self._open(source) as document:
            pages = document.page_count
            for number, page in enumerate(document, start=1):
                sheet = workbook.create_sheet(title=f"Page {number}")
                tables = page.find_tables().tables
                if tables:
                    for table in tables:
                        for row in table.extract():
                            sheet.append(["" if cell is None else cell for cell in row])
                        sheet.append([])
                else:
                    for line in (page.get_text("text") or "").splitlines():
                        sheet.append(line.split("\t"))
        if not workbook.worksheets:
            workbook.create_sheet(title="Page 1")

        buffer = io.BytesIO()
        workbook.save(buffer)
        return OperationResult(
            content=buffer.getvalue(),
            filename=f"{source.stem}.xlsx",
            content_type=XLSX_CONTENT_TYPE,
            metadata={"conversionType": self.tool_id, "pageCount": pages},
        )


class PdfToPowerpointHandler(FromPdfHandler):
    """Each page becomes a slide holding the rendered page image."""

    tool_id = "pdf-to-powerpoint"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        dpi = self._dpi(options)
        presentation = Presentation()
        blank_layout = presentation.slide_layouts[6]

        with self._open(source) as document:
            pages = document.page_count
            if pages:
                first = document[0].rect
                presentation.slide_width = Pt(first.width)
                presentation.slide_height = Pt(first.height)
            for image in self._page_images(document, dpi):
                slide = presentation.slides.add_slide(blank_layout)
                slide.shapes.add_picture(
                    io.BytesIO(image), 0, 0, width=presentation.slide_width, height=presentation.slide_height
                )

        buffer = io.BytesIO()
        presentation.save(buffer)
        return OperationResult(
            content=buffer.getvalue(),
            filename=f"{source.stem}.pptx",
            content_type=PPTX_CONTENT_TYPE,
            metadata={"conversionType": self.tool_id, "pageCount": pages, "dpi": dpi},
        )


class PdfToJpgHandler(FromPdfHandler):
    """A single page yields one JPG; several pages yield a ZIP of JPGs."""

    tool_id = "pdf-to-jpg"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        dpi = self._dpi(options)
        images = []
        with self._open(source) as document:
            pages = document.page_count
            for number, png in enumerate(self._page_images(document, dpi), start=1):
                buffer = io.BytesIO()
                Image.open(io.BytesIO(png)).convert("RGB").save(
                    buffer, format="JPEG", quality=self.conversion.jpeg_quality
                )
                images.append((f"{source.stem}_page{number:03d}.jpg", buffer.getvalue()))

        metadata = {"conversionType": self.tool_id, "pageCount": pages, "dpi": dpi}
        if len(images) == 1:
            filename, content = images[0]
            return OperationResult(content, f"{source.stem}.jpg", JPEG_CONTENT_TYPE, metadata)
        return OperationResult(zip_archive(images), f"{source.stem}_images.zip", ZIP_CONTENT_TYPE, metadata)
