from __future__ import annotations

from types import MappingProxyType
from typing import List, Mapping, Optional, Type

from omegaconf import DictConfig

from .base import ConversionSettings, OperationHandler
from .convert import (
    ExcelToPdfHandler,
    HtmlToPdfHandler,
    ImagesToPdfHandler,
    PdfToExcelHandler,
    PdfToJpgHandler,
    PdfToPowerpointHandler,
    PdfToWordHandler,
    PowerpointToPdfHandler,
    WordToPdfHandler,
)
from .optimize import CompressHandler, RepairHandler
from .pages import (
    ExtractPagesHandler,
    MergeHandler,
    PageNumbersHandler,
    RemovePagesHandler,
    RotateHandler,
    SplitHandler,
)
from .security import ProtectHandler, SignHandler, UnlockHandler, WatermarkHandler

HANDLER_CLASSES: List[Type[OperationHandler]] = [
    MergeHandler,
    SplitHandler,
    CompressHandler,
    RotateHandler,
    PageNumbersHandler,
    RemovePagesHandler,
    ExtractPagesHandler,
    RepairHandler,
    ProtectHandler,
    UnlockHandler,
    WatermarkHandler,
    SignHandler,
    WordToPdfHandler,
    ExcelToPdfHandler,
    PowerpointToPdfHandler,
    ImagesToPdfHandler,
    HtmlToPdfHandler,
    PdfToWordHandler,
    PdfToExcelHandler,
    PdfToPowerpointHandler,
    PdfToJpgHandler,
]


def build_registry(config: Optional[DictConfig] = None) -> Mapping[str, OperationHandler]:
    """Instantiate every handler once and return a read-only tool id -> handler mapping."""
    conversion = ConversionSettings.from_config(config) if config is not None else ConversionSettings()
    handlers = {}
    for handler_cls in HANDLER_CLASSES:
        if handler_cls.tool_id in handlers:
            raise ValueError(f"Duplicate handler for tool '{handler_cls.tool_id}'")
        handlers[handler_cls.tool_id] = handler_cls(conversion)
    return MappingProxyType(handlers)
