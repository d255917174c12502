# errors.py
"""HTTP-aware exceptions raised by the scraping layer."""
from fastapi import HTTPException


class ScraperError(HTTPException):
    status_code = 500
    default_detail = "Scraping error"

    def __init__(self, detail: str = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)

    def __str__(self) -> str:
        return f"{self.status_code}: {self.detail}"


class InvalidRequest(ScraperError):
    status_code = 400
    default_detail = "Invalid request"


class NotFound(ScraperError):
    status_code = 404
    default_detail = "Resource not found"


class UpstreamBlocked(ScraperError):
    """Anti-bot page or stale credentials; the caller may refresh and retry once."""
    status_code = 403
    default_detail = "DDoS-Guard authentication required"


class UpstreamUnavailable(ScraperError):
    status_code = 503
    default_detail = "Upstream unavailable"


class ExtractionFailed(ScraperError):
    """Nothing usable could be extracted from a fetched page."""
    status_code = 500
    default_detail = "Failed to extract source"
