"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided filenames for storage keys and downloads
- Ensuring directory creation with proper error handling
- Splitting and normalising file extensions
- Redacting secrets from tool options before they are persisted
"""

from __future__ import annotations

import mimetypes
import re
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping
from uuid import uuid4

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Option keys whose values must never be stored on a Job
SECRET_OPTION_KEYS = frozenset({"password", "ownerPassword", "userPassword"})
REDACTED = "***"


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "file")
        "my-document"
        >>> sanitize_label("@#$", "file")
        "file"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercased extension.

    Example:
        >>> split_extension("Report.PDF")
        ("Report", ".pdf")
    """
    path = Path(filename)
    return path.stem, path.suffix.lower()


def make_storage_key(original_name: str) -> str:
    """Build a unique blob key carrying the original extension."""
    _, extension = split_extension(original_name)
    return f"{uuid4().hex}{extension}"


def ascii_filename(filename: str) -> str:
    """ASCII fallback for Content-Disposition, keeping the extension."""
    stem, extension = split_extension(filename)
    return f"{sanitize_label(stem, 'download')}{extension}"


def guess_content_type(filename: str, declared: str | None = None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(filename)
    return guessed or declared or "application/octet-stream"


def normalize_extensions(extensions: Iterable[str]) -> list[str]:
    """Lowercase extensions and make sure each carries a leading dot."""
    normalized = []
    for ext in extensions:
        ext = str(ext).strip().lower()
        if ext and not ext.startswith("."):
            ext = f".{ext}"
        if ext:
            normalized.append(ext)
    return normalized


def redact_options(options: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy options, masking password-like values and large inline images."""
    redacted: Dict[str, Any] = {}
    for key, value in options.items():
        if key in SECRET_OPTION_KEYS and value:
            redacted[key] = REDACTED
        elif key in {"image", "signatureImage"} and isinstance(value, str) and len(value) > 64:
            redacted[key] = f"<{len(value)} base64 chars>"
        elif isinstance(value, Mapping):
            redacted[key] = redact_options(value)
        else:
            redacted[key] = value
    return redacted
