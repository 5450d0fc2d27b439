"""
errors.py — exception hierarchy shared by the pipeline and the web layer.

Every exception that can reach a request handler derives from
GarageSaleError and carries the HTTP status the server middleware maps it to.
ProviderCallError and ResponseParseError never leave the providers package:
they are converted into an AnalysisFailure outcome before returning.
"""
from __future__ import annotations

from typing import Any, Optional


class GarageSaleError(Exception):
    """Base exception for all pipeline errors."""

    status: int = 500
    code: str = "internal_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(GarageSaleError):
    """Bad upload type/size or malformed request body. Raised before any storage write."""
    status = 400
    code = "validation_error"


class ItemNotFound(GarageSaleError):
    status = 404
    code = "item_not_found"


class ImageNotFound(GarageSaleError):
    status = 404
    code = "image_not_found"


class ProviderNotConfigured(GarageSaleError):
    """No provider/key available. Uploads skip analysis silently; explicit analyze requests get a 400."""
    status = 400
    code = "provider_not_configured"


class StorageError(GarageSaleError):
    """Disk or permission failure while writing an asset. Fatal for the upload."""
    status = 500
    code = "storage_error"


class ProviderCallError(GarageSaleError):
    """Timeout, network, auth or rate-limit failure talking to a provider."""
    status = 502
    code = "provider_call_error"

    def __init__(self, message: str, transient: bool = False, details: Optional[dict[str, Any]] = None):
        super().__init__(message, details)
        self.transient = transient


class ResponseParseError(GarageSaleError):
    """Provider replied, but no valid analysis JSON could be extracted."""
    status = 502
    code = "response_parse_error"

    def __init__(self, message: str, raw_text: str):
        super().__init__(message)
        self.raw_text = raw_text
