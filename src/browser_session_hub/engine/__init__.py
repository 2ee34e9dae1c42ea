"""Automation engine handles and the backends that create them."""

from .base import (
    DEFAULT_EXTRACTION_SCHEMA,
    EngineActionError,
    EngineBackend,
    EngineHandle,
    EngineUnavailableError,
    PageContext,
)

__all__ = [
    "DEFAULT_EXTRACTION_SCHEMA",
    "EngineActionError",
    "EngineBackend",
    "EngineHandle",
    "EngineUnavailableError",
    "PageContext",
]
