"""Core infrastructure modules."""

from .exceptions import (
    IngestError,
    ConfigInvalid,
    StoreUnavailable,
    FetchError,
    FetchTimeout,
    FetchTransport,
    FetchStatus,
    FetchRateLimited,
    UpstreamShapeError,
    EPGParseTimeout,
    JobNotFound,
    AdmissionDenied,
    Unauthorized,
)
from .logging import setup_logging, get_logger

__all__ = [
    "IngestError",
    "ConfigInvalid",
    "StoreUnavailable",
    "FetchError",
    "FetchTimeout",
    "FetchTransport",
    "FetchStatus",
    "FetchRateLimited",
    "UpstreamShapeError",
    "EPGParseTimeout",
    "JobNotFound",
    "AdmissionDenied",
    "Unauthorized",
    "setup_logging",
    "get_logger",
]
