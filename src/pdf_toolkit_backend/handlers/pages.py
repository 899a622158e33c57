"""Page-level handlers: merge, split, rotate, number, remove and extract."""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Sequence

from pypdf import PdfWriter

from ..errors import InvalidOption
from ._pdf import (
    PDF_CONTENT_TYPE,
    ZIP_CONTENT_TYPE,
    anchor_point,
    copy_metadata,
    copy_pages,
    draw_aligned,
    open_pdf,
    page_count,
    parse_color,
    parse_page_ranges,
    stamp_page,
    write_pdf,
    zip_archive,
)
from .base import (
    OperationHandler,
    OperationResult,
    SourceFile,
    choice_option,
    int_option,
    page_indices_option,
)

logger = logging.getLogger(__name__)

PAGE_NUMBER_POSITIONS = ("topLeft", "topCenter", "topRight", "bottomLeft", "bottomCenter", "bottomRight")


class MergeHandler(OperationHandler):
    tool_id = "merge-pdf"
    category = "organize"
    min_files = 2
    max_files = None

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        order = options.get("pageOrder")
        if order is None:
            order = list(range(len(sources)))
        elif (
            not isinstance(order, list)
            or any(isinstance(index, bool) or not isinstance(index, int) for index in order)
            or sorted(order) != list(range(len(sources)))
        ):
            raise InvalidOption(f"'pageOrder' must be a permutation of 0..{len(sources) - 1}, got {order}")

        writer = PdfWriter()
        input_page_counts: List[int] = []
        for index in order:
            source = sources[index]
            reader = open_pdf(source)
            count = page_count(reader, source)
            for page in reader.pages:
                writer.add_page(page)
            input_page_counts.append(count)

        return OperationResult(
            content=write_pdf(writer),
            filename="merged.pdf",
            content_type=PDF_CONTENT_TYPE,
            metadata={
                "pageCount": sum(input_page_counts),
                "inputPageCounts": input_page_counts,
                "order": list(order),
            },
        )


class SplitHandler(OperationHandler):
    """
    Split one PDF into page groups.

    ``splitMethod: everyNPages`` chunks by a fixed page count and is implied
    when ``everyNPages`` is given without ``ranges``. Otherwise the ``ranges``
    string defines one group per item, and with no ranges every page becomes
    its own part. A single group yields a PDF, several a ZIP.
    """

    tool_id = "split-pdf"
    category = "organize"

    def _chunks(self, options: Mapping[str, Any], total: int) -> List[List[int]]:
        implied = options.get("everyNPages") is not None and not options.get("ranges")
        default_method = "everyNPages" if implied else "range"
        method = choice_option(options, "splitMethod", default_method, ("range", "everyNPages"))
        if method == "everyNPages":
            size = int_option(options, "everyNPages", 1, minimum=1)
            return [list(range(start, min(start + size, total))) for start in range(0, total, size)]
        ranges = options.get("ranges")
        if ranges:
            return parse_page_ranges(ranges, total)
        return [[index] for index in range(total)]

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source)
        total = page_count(reader, source)
        chunks = self._chunks(options, total)

        parts = []
        for number, chunk in enumerate(chunks, start=1):
            writer = copy_pages(reader, chunk)
            copy_metadata(writer, reader)
            parts.append((f"{source.stem}_part{number}.pdf", write_pdf(writer)))

        metadata = {"chunks": chunks, "partCount": len(parts), "sourcePageCount": total}
        if len(parts) == 1:
            filename, content = parts[0]
            return OperationResult(content, filename, PDF_CONTENT_TYPE, metadata)

        logger.debug(f"Bundling {len(parts)} split parts of {source.name}")
        return OperationResult(zip_archive(parts), f"{source.stem}_split.zip", ZIP_CONTENT_TYPE, metadata)


class RotateHandler(OperationHandler):
    tool_id = "rotate-pdf"
    category = "organize"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source)
        total = page_count(reader, source)

        angle = int_option(options, "angle", 90)
        if angle % 90:
            raise InvalidOption(f"Rotation angle must be a multiple of 90, got {angle}")
        pages = page_indices_option(options, "pages", total)
        targets = set(range(total) if pages is None else pages)

        writer = PdfWriter()
        for index, page in enumerate(reader.pages):
            if index in targets:
                page.rotate(angle)
            writer.add_page(page)
        copy_metadata(writer, reader)

        return OperationResult(
            content=write_pdf(writer),
            filename=f"rotated_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"rotatedPages": sorted(targets), "rotationAngle": angle},
        )


class PageNumbersHandler(OperationHandler):
    tool_id = "add-page-numbers"
    category = "edit"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source)
        total = page_count(reader, source)

        start = int_option(options, "startNumber", 1)
        position = choice_option(options, "position", "bottomCenter", PAGE_NUMBER_POSITIONS)
        template = str(options.get("format") or "{n}")
        font_size = int_option(options, "fontSize", 11, minimum=1)
        color = parse_color(options.get("fontColor", "#000000"), "fontColor")

        writer = PdfWriter()
        for index, page in enumerate(reader.pages):
            label = template.replace("{n}", str(start + index)).replace("{total}", str(total))

            def _draw(pdf, width, height, label=label):
                x, y, align = anchor_point(position, width, height, margin=max(font_size, 24))
                pdf.setFont("Helvetica", font_size)
                pdf.setFillColor(color)
                draw_aligned(pdf, x, y, align, label)

            stamp_page(writer.add_page(page), _draw)
        copy_metadata(writer, reader)

        return OperationResult(
            content=write_pdf(writer),
            filename=f"numbered_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"pageCount": total, "startNumber": start, "format": template},
        )


class RemovePagesHandler(OperationHandler):
    tool_id = "remove-pages"
    category = "organize"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source)
        total = page_count(reader, source)
        to_remove = sorted(set(page_indices_option(options, "pagesToRemove", total, required=True)), reverse=True)
        if len(to_remove) >= total:
            raise InvalidOption("Cannot remove every page of the document")

        writer = PdfWriter(clone_from=reader)
        # Back to front so earlier indices stay valid
        for index in to_remove:
            del writer.pages[index]

        return OperationResult(
            content=write_pdf(writer),
            filename=f"edited_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={
                "removedPages": sorted(to_remove),
                "originalPageCount": total,
                "newPageCount": total - len(to_remove),
            },
        )


class ExtractPagesHandler(OperationHandler):
    tool_id = "extract-pages"
    category = "organize"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source)
        total = page_count(reader, source)
        indices = page_indices_option(options, "pagesToExtract", total, required=True)

        writer = copy_pages(reader, indices)
        copy_metadata(writer, reader)

        return OperationResult(
            content=write_pdf(writer),
            filename=f"extracted_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"extractedPages": indices, "pageCount": len(indices)},
        )
