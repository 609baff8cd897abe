from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


@dataclass
class PipelineError(Exception):
    message: str
    code: str = "pipeline_error"
    transient: bool = False
    details: Optional[dict[str, Any]] = None
    http_status: int = 500

    def __str__(self) -> str:
        return self.message


class ConfigError(PipelineError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="config_error", transient=False, details=details, http_status=500)


class ProviderNotFoundError(PipelineError):
    def __init__(self, provider_id: str):
        super().__init__(
            message=f"Unknown WhatsApp provider: {provider_id}",
            code="provider_not_found",
            transient=False,
            details={"provider": provider_id},
            http_status=424,
        )


class ValidationError(PipelineError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="validation_error", transient=False, details=details, http_status=400)


class NotFoundError(PipelineError):
    def __init__(self, entity: str, *, ref: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        merged_details: dict[str, Any] = {"entity": entity}
        if ref is not None:
            merged_details["ref"] = ref
        if details:
            merged_details.update(details)
        super().__init__(
            message=f"{entity.capitalize()} not found",
            code=f"{entity}_not_found",
            transient=False,
            details=merged_details,
            http_status=404,
        )


class ProviderNotConfigured(PipelineError):
    def __init__(self, message: str = "WhatsApp provider not configured", *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="provider_not_configured", transient=False, details=details, http_status=424)


class RelayFailed(PipelineError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        transient: bool = False,
        details: Optional[dict[str, Any]] = None,
        http_status: int = 502,
    ):
        merged_details: dict[str, Any] = {}
        if status_code is not None:
            merged_details["status_code"] = status_code
        if details:
            merged_details.update(details)
        super().__init__(
            message=message,
            code="relay_failed",
            transient=transient,
            details=merged_details or None,
            http_status=http_status,
        )


class PersistenceFailed(PipelineError):
    def __init__(self, message: str, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message=message, code="persistence_failed", transient=False, details=details, http_status=500)
