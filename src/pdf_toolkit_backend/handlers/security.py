"""Security and stamping handlers: protect, unlock, watermark and sign."""

from __future__ import annotations

import secrets
from typing import Any, Dict, Mapping, Optional, Sequence

from pypdf import PdfWriter
from pypdf.constants import UserAccessPermissions
from pypdf.errors import PyPdfError
from reportlab.lib.utils import ImageReader

from ..errors import BackendConversionFailure, CorruptInput, InvalidOption, MissingRequiredOption
from ._pdf import (
    PDF_CONTENT_TYPE,
    copy_metadata,
    decode_image,
    open_pdf,
    page_count,
    parse_color,
    place_box,
    stamp_page,
    write_pdf,
)
from .base import (
    OperationHandler,
    OperationResult,
    SourceFile,
    choice_option,
    float_option,
    int_option,
    require_option,
)

STAMP_POSITIONS = ("center", "topLeft", "topRight", "bottomLeft", "bottomRight")

# Every documented permission bit plus the reserved bits the PDF standard requires to be set
ALL_PERMISSIONS = UserAccessPermissions((2**31 - 1) - 3)

PERMISSION_FLAGS = {
    "printing": UserAccessPermissions.PRINT | UserAccessPermissions.PRINT_TO_REPRESENTATION,
    "modifying": UserAccessPermissions.MODIFY,
    "copying": UserAccessPermissions.EXTRACT,
    "annotating": UserAccessPermissions.ADD_OR_MODIFY,
    "fillingForms": UserAccessPermissions.FILL_FORM_FIELDS,
    "accessibility": UserAccessPermissions.EXTRACT_TEXT_AND_GRAPHICS,
    "assembly": UserAccessPermissions.ASSEMBLE_DOC,
}


def _resolve_permissions(value: Any) -> Dict[str, bool]:
    if value is None:
        value = {}
    if not isinstance(value, Mapping):
        raise InvalidOption("Option 'permissions' must be an object of booleans")
    unknown = set(value) - set(PERMISSION_FLAGS)
    if unknown:
        raise InvalidOption(f"Unknown permissions: {sorted(unknown)}")
    return {name: bool(value.get(name, True)) for name in PERMISSION_FLAGS}


class ProtectHandler(OperationHandler):
    """
    Encrypt a PDF with a user password and a permission set.

    Permissions only bind readers that open the file with the user password,
    so unless ``ownerPassword`` is given a random owner password is used.
    """

    tool_id = "protect-pdf"
    category = "security"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        password = str(require_option(options, "password"))
        permissions = _resolve_permissions(options.get("permissions"))
        owner_password = str(options.get("ownerPassword") or secrets.token_urlsafe(24))

        reader = open_pdf(source)
        page_count(reader, source)

        flags = ALL_PERMISSIONS
        for name, allowed in permissions.items():
            if not allowed:
                flags &= ~PERMISSION_FLAGS[name]

        writer = PdfWriter(clone_from=reader)
        writer.encrypt(user_password=password, owner_password=owner_password, permissions_flag=flags)

        return OperationResult(
            content=write_pdf(writer),
            filename=f"protected_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"secured": True, "permissions": permissions},
        )


class UnlockHandler(OperationHandler):
    tool_id = "unlock-pdf"
    category = "security"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        reader = open_pdf(source, allow_encrypted=True)
        filename = f"unlocked_{source.name}"

        if not reader.is_encrypted:
            return OperationResult(
                source.content, filename, PDF_CONTENT_TYPE, {"secured": False, "wasEncrypted": False}
            )

        password = options.get("password")
        if not password:
            raise MissingRequiredOption(f"{source.name} is encrypted; option 'password' is required")
        try:
            decrypted = reader.decrypt(str(password))
        except PyPdfError as exc:
            raise BackendConversionFailure(f"Cannot decrypt {source.name}: {exc}") from exc
        if not decrypted:
            raise CorruptInput(f"Incorrect password for {source.name}")

        writer = PdfWriter()
        for page in reader.pages:
            writer.add_page(page)
        copy_metadata(writer, reader)

        return OperationResult(
            content=write_pdf(writer),
            filename=filename,
            content_type=PDF_CONTENT_TYPE,
            metadata={"secured": False, "wasEncrypted": True},
        )


def _fit_image(image: ImageReader, max_width: float, max_height: float):
    width, height = image.getSize()
    scale = min(max_width / width, max_height / height, 1.0)
    return width * scale, height * scale


class WatermarkHandler(OperationHandler):
    tool_id = "add-watermark"
    category = "security"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        text: Optional[str] = options.get("text") or None
        image_data = options.get("image") or None
        if not text and not image_data:
            raise MissingRequiredOption("Either 'text' or 'image' is required for a watermark")

        image = decode_image(image_data, "image") if image_data else None
        font_size = int_option(options, "fontSize", 48, minimum=1)
        color = parse_color(options.get("color", "#808080"))
        opacity = float_option(options, "opacity", 0.3, 0.0, 1.0)
        rotation = float_option(options, "rotation", 45, -360, 360)
        position = choice_option(options, "position", "center", STAMP_POSITIONS)

        reader = open_pdf(source)
        page_count(reader, source)

        def _draw(pdf, width, height):
            image_size = _fit_image(image, width * 0.5, height * 0.5) if image else (0, 0)
            text_width = pdf.stringWidth(text, "Helvetica-Bold", font_size) if text else 0
            box_width = max(image_size[0], text_width)
            box_height = image_size[1] + (font_size if text else 0)
            x, y = place_box(position, width, height, box_width, box_height, margin=36)

            pdf.saveState()
            pdf.setFillAlpha(opacity)
            pdf.translate(x + box_width / 2, y + box_height / 2)
            pdf.rotate(rotation)
            if image:
                pdf.drawImage(image, -image_size[0] / 2, -box_height / 2, *image_size, mask="auto")
            if text:
                pdf.setFont("Helvetica-Bold", font_size)
                pdf.setFillColor(color)
                pdf.drawCentredString(0, box_height / 2 - font_size * 0.8, text)
            pdf.restoreState()

        writer = PdfWriter()
        for page in reader.pages:
            stamp_page(writer.add_page(page), _draw)
        copy_metadata(writer, reader)

        described = {key: value for key, value in options.items() if key != "image"}
        described["image"] = bool(image)
        return OperationResult(
            content=write_pdf(writer),
            filename=f"watermarked_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"watermark": described},
        )


class SignHandler(OperationHandler):
    """Stamp a visible signature (text and/or image) onto one page."""

    tool_id = "sign-pdf"
    category = "security"

    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        source = sources[0]
        text = options.get("signatureText") or None
        image_data = options.get("signatureImage") or None
        if not text and not image_data:
            raise MissingRequiredOption("Either 'signatureText' or 'signatureImage' is required")

        image = decode_image(image_data, "signatureImage") if image_data else None
        position = choice_option(options, "position", "bottomRight", STAMP_POSITIONS)

        reader = open_pdf(source)
        total = page_count(reader, source)
        target = int_option(options, "page", total - 1)
        if not 0 <= target < total:
            raise InvalidOption(f"Page index {target} is out of range for a {total}-page document")

        def _draw(pdf, width, height):
            image_size = _fit_image(image, 180, 70) if image else (0, 0)
            text_width = pdf.stringWidth(text, "Helvetica-Oblique", 14) if text else 0
            box_width = max(image_size[0], text_width)
            box_height = image_size[1] + (18 if text else 0)
            x, y = place_box(position, width, height, box_width, box_height, margin=48)
            if image:
                pdf.drawImage(image, x + (box_width - image_size[0]) / 2, y + box_height - image_size[1],
                              *image_size, mask="auto")
            if text:
                pdf.setFont("Helvetica-Oblique", 14)
                pdf.drawCentredString(x + box_width / 2, y + 4, text)

        writer = PdfWriter()
        for index, page in enumerate(reader.pages):
            added = writer.add_page(page)
            if index == target:
                stamp_page(added, _draw)
        copy_metadata(writer, reader)

        return OperationResult(
            content=write_pdf(writer),
            filename=f"signed_{source.name}",
            content_type=PDF_CONTENT_TYPE,
            metadata={"signed": True, "signedPage": target},
        )
