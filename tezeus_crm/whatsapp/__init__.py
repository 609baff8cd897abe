from .container import PipelineContainer, get_pipeline_container
from .errors import (
    NotFoundError,
    PersistenceFailed,
    PipelineError,
    ProviderNotConfigured,
    RelayFailed,
    ValidationError,
)

__all__ = [
    "PipelineContainer",
    "get_pipeline_container",
    "PipelineError",
    "ValidationError",
    "NotFoundError",
    "ProviderNotConfigured",
    "RelayFailed",
    "PersistenceFailed",
]
