"""Pydantic models and key helpers."""

from .jobs import JobDefinition, JobsConfig, JobParams, JobStatus, DispatchResult
from .provider import ProviderConfig

__all__ = [
    "JobDefinition",
    "JobsConfig",
    "JobParams",
    "JobStatus",
    "DispatchResult",
    "ProviderConfig",
]
