from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Sequence, Tuple

from omegaconf import DictConfig

from ..database import FileRecord
from ..errors import InvalidOption, MissingRequiredOption
from ..models import ToolInfo


@dataclass(frozen=True)
class SourceFile:
    """An input File record together with its stored bytes."""

    record: FileRecord
    content: bytes

    @property
    def name(self) -> str:
        return self.record.original_name

    @property
    def stem(self) -> str:
        return Path(self.record.original_name).stem or "document"

    @property
    def extension(self) -> str:
        return self.record.extension


@dataclass
class OperationResult:
    """
    In-memory output of a handler.

    Handlers never persist anything; the dispatcher stores ``content`` and
    creates the output File record from the remaining fields.
    """

    content: bytes
    filename: str
    content_type: str
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ConversionSettings:
    dpi: int = 150
    jpeg_quality: int = 85
    libreoffice_path: str = ""
    timeout_seconds: int = 120

    @classmethod
    def from_config(cls, config: DictConfig) -> "ConversionSettings":
        section = config.conversion
        return cls(
            dpi=int(section.dpi),
            jpeg_quality=int(section.jpeg_quality),
            libreoffice_path=str(section.libreoffice_path or ""),
            timeout_seconds=int(section.timeout_seconds),
        )


class OperationHandler(ABC):
    """Contract for all tool handlers: one single-purpose transformation per tool id."""

    tool_id: ClassVar[str]
    category: ClassVar[str]
    accepted_extensions: ClassVar[Tuple[str, ...]] = (".pdf",)
    min_files: ClassVar[int] = 1
    max_files: ClassVar[Optional[int]] = 1

    def __init__(self, conversion: Optional[ConversionSettings] = None) -> None:
        self.conversion = conversion or ConversionSettings()

    @abstractmethod
    def handle(self, sources: Sequence[SourceFile], options: Mapping[str, Any]) -> OperationResult:
        """Transform the input files.

        Args:
            sources: Input files in request order, already checked for arity
                and extension by the dispatcher.
            options: Submitted options merged over the configured defaults.

        Raises:
            OperationError: any handler failure (see errors.py).
        """

    def describe(self, defaults: Mapping[str, Any]) -> ToolInfo:
        return ToolInfo(
            id=self.tool_id,
            category=self.category,
            accepted_extensions=list(self.accepted_extensions),
            min_files=self.min_files,
            max_files=self.max_files,
            defaults=dict(defaults),
        )


# Option parsing shared by handlers


def require_option(options: Mapping[str, Any], key: str) -> Any:
    value = options.get(key)
    if value is None or value == "" or value == []:
        raise MissingRequiredOption(f"Option '{key}' is required")
    return value


def int_option(options: Mapping[str, Any], key: str, default: int, minimum: Optional[int] = None) -> int:
    value = options.get(key, default)
    if isinstance(value, bool):
        raise InvalidOption(f"Option '{key}' must be an integer")
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidOption(f"Option '{key}' must be an integer, got {value!r}") from exc
    if minimum is not None and number < minimum:
        raise InvalidOption(f"Option '{key}' must be at least {minimum}, got {number}")
    return number


def float_option(options: Mapping[str, Any], key: str, default: float, low: float, high: float) -> float:
    value = options.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidOption(f"Option '{key}' must be a number, got {value!r}") from exc
    if not low <= number <= high:
        raise InvalidOption(f"Option '{key}' must be between {low} and {high}, got {number}")
    return number


def choice_option(options: Mapping[str, Any], key: str, default: str, choices: Sequence[str]) -> str:
    value = options.get(key, default)
    if value not in choices:
        raise InvalidOption(f"Option '{key}' must be one of {list(choices)}, got {value!r}")
    return value


def page_indices_option(
    options: Mapping[str, Any], key: str, page_count: int, required: bool = False
) -> Optional[List[int]]:
    """Parse a list of 0-based page indices, validating each against the page count."""
    value = require_option(options, key) if required else options.get(key)
    if value is None:
        return None
    if not isinstance(value, (list, tuple)):
        raise InvalidOption(f"Option '{key}' must be a list of page indices")
    indices = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            raise InvalidOption(f"Option '{key}' contains a non-integer page index: {item!r}")
        if not 0 <= item < page_count:
            raise InvalidOption(f"Page index {item} is out of range for a {page_count}-page document")
        indices.append(item)
    return indices
