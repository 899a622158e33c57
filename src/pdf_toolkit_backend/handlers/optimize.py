from __future__ import annotations

import logging
from typing import Any, Mapping, Sequence

import pymupdf
from pypdf import PdfWriter
from pypdf.errors import PyPdfError

from ..errors import CorruptInput
from ._pdf import PDF_CONTENT_TYPE, open_pdf, page_count, write_pdf
from .base import OperationHandler, OperationResult, SourceFile, choice_option

logger = logging.getLogger(__name__)

# JPEG quality used when re-encoding embedded images for each hint
IMAGE_QUALITY = {"low": 40, "medium": 65, "high": 85}


class CompressHandler(OperationHandler):
    """
    Reduce file size without rasterising pages.

    Content streams are deflated, identical objects are merged, and embedded
    images are re-encoded as JPEG at a quality derived from the hint. If the
    result is not smaller than the input, the input bytes are returned as is.
    """

    tool_id = "compress-pdf"
    category = "optimize"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        quality = choice_option(options, "quality", "medium", tuple(IMAGE_QUALITY))
        reader = open_pdf(source)
        page_count(reader, source)

        writer = PdfWriter(clone_from=reader)
        for number, page in enumerate(writer.pages, start=1):
            for image in page.images:
                try:
                    image.replace(image.image, quality=IMAGE_QUALITY[quality])
                except (PyPdfError, OSError, ValueError) as exc:
                    logger.debug(f"Keeping image {image.name} on page {number} of {source.name}: {exc}")
            page.compress_content_streams()
        writer.compress_identical_objects()
        content = write_pdf(writer)

        original_size = len(source.content)
        if len(content) >= original_size:
            content = source.content

        return OperationResult(
            content=content,
            filename=f"compressed_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={
                "quality": quality,
                "originalSize": original_size,
                "compressedSize": len(content),
                "compressionRatio": round(len(content) / original_size, 4) if original_size else 1,
            },
        )


class RepairHandler(OperationHandler):
    """Re-serialise a damaged PDF through MuPDF's tolerant parser."""

    tool_id = "repair-pdf"
    category = "optimize"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        try:
            with pymupdf.open(stream=source.content, filetype="pdf") as document:
                if document.needs_pass:
                    raise CorruptInput(f"{source.name} is password protected; unlock it first")
                pages = document.page_count
                if pages == 0:
                    raise CorruptInput(f"No pages could be recovered from {source.name}")
                content = document.tobytes(garbage=4, deflate=True, clean=True)
        except (RuntimeError, ValueError) as exc:
            raise CorruptInput(f"{source.name} could not be repaired: {exc}") from exc

        return OperationResult(
            content=content,
            filename=f"repaired_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"repaired": True, "pageCount": pages},
        )
