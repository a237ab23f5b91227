"""
Exceptions

Error kinds raised by the ingestion core and the FastAPI handler that
renders them for the admin API.
"""

from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse


class IngestError(Exception):
    """Base exception for ingestion errors."""

    def __init__(self, message: str, status_code: int = 500):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class ConfigInvalid(IngestError):
    """Malformed job or cache-policy configuration. Fatal at boot."""

    def __init__(self, source: str, detail: str):
        self.source = source
        super().__init__(message=f"Invalid configuration in {source}: {detail}")


class StoreUnavailable(IngestError):
    """Document store cannot be reached."""

    def __init__(self, detail: str):
        super().__init__(message=f"Document store unavailable: {detail}", status_code=503)


# =============================================================================
# FETCH ERRORS
# =============================================================================

class FetchError(IngestError):
    """Base class for per-request upstream failures."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: int = 502):
        self.url = url
        super().__init__(message=message, status_code=status_code)


class FetchTimeout(FetchError):
    def __init__(self, url: str):
        super().__init__(f"Request timed out: {url}", url=url, status_code=504)


class FetchTransport(FetchError):
    def __init__(self, url: str, detail: str):
        super().__init__(f"Upstream unreachable: {url} ({detail})", url=url)


class FetchStatus(FetchError):
    """Non-2xx response."""

    def __init__(self, url: str, code: int):
        self.code = code
        super().__init__(f"Upstream returned HTTP {code}: {url}", url=url)


class FetchRateLimited(FetchStatus):
    """HTTP 429 that persisted through every retry."""

    def __init__(self, url: str):
        super().__init__(url, 429)


class UpstreamShapeError(IngestError):
    """Parsed upstream payload lacks required fields."""

    def __init__(self, detail: str):
        super().__init__(message=f"Unexpected upstream payload: {detail}", status_code=502)


class EPGParseTimeout(IngestError):
    """Streaming XMLTV parse exceeded its watchdog."""

    def __init__(self, seconds: float):
        super().__init__(message=f"EPG parse timed out after {seconds:g}s", status_code=504)


# =============================================================================
# JOB ERRORS
# =============================================================================

class JobNotFound(IngestError):
    def __init__(self, job_name: str):
        super().__init__(message=f"Job not found: {job_name}", status_code=404)


class AdmissionDenied(IngestError):
    """HTTP rendering of a rejected dispatch. The scheduler itself returns, never raises."""

    def __init__(self, reason: str):
        super().__init__(message=reason, status_code=409)


class Unauthorized(IngestError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message=message, status_code=401)


async def ingest_exception_handler(
    request: Request,
    exc: IngestError
) -> JSONResponse:
    """Handle IngestError and return JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "message": exc.message,
            "status_code": exc.status_code,
        }
    )


def register_exception_handlers(app):
    """Register all exception handlers with the FastAPI app."""
    app.add_exception_handler(IngestError, ingest_exception_handler)
