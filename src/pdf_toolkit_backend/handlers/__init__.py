"""Operation handlers, one per tool id."""

from .base import ConversionSettings, OperationHandler, OperationResult, SourceFile
from .registry import build_registry

__all__ = ["ConversionSettings", "OperationHandler", "OperationResult", "SourceFile", "build_registry"]
