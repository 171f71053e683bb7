"""HereIAm error types.

Every error carries a stable ``code`` and a ``details`` dict so the CLI (or any
other boundary layer) can report one verdict plus a readable message.

- ScanError: folder enumeration failed, the scan aborts
- ExtractionError: one file could not be read, it is skipped
- ProviderError: embedding computation failed or returned malformed output
- StoreError: metadata database failure
- VectorIndexError: vector index build/search failure
- ValidationError: bad query or selection, raised before any side effect
"""

from __future__ import annotations

from typing import Any, Optional


class HereIAmError(Exception):
    """Base error with structured context."""

    code = "HEREIAM_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}

    def __str__(self) -> str:
        return self.message


class ConfigError(HereIAmError):
    code = "CONFIG_ERROR"

    @classmethod
    def invalid_value(cls, name: str, value: Any, reason: str) -> "ConfigError":
        return cls(
            f"Invalid value for '{name}': {reason}",
            {"field": name, "value": str(value), "reason": reason},
        )


class ScanError(HereIAmError):
    code = "SCAN_ERROR"

    def __init__(self, message: str, path: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, {"path": path, **(details or {})})
        self.path = path


class ExtractionError(HereIAmError):
    code = "EXTRACTION_ERROR"

    def __init__(self, message: str, path: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message, {"path": path, **(details or {})})
        self.path = path


class ProviderError(HereIAmError):
    code = "PROVIDER_ERROR"


class StoreError(HereIAmError):
    code = "STORE_ERROR"


class VectorIndexError(HereIAmError):
    code = "INDEX_ERROR"


class ValidationError(HereIAmError):
    code = "VALIDATION_ERROR"


class BusyError(ValidationError):
    """An indexing run is in progress; search and scan must wait."""

    code = "BUSY"


__all__ = [
    "BusyError",
    "ConfigError",
    "ExtractionError",
    "HereIAmError",
    "ProviderError",
    "ScanError",
    "StoreError",
    "ValidationError",
    "VectorIndexError",
]
