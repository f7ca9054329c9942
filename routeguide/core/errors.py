from __future__ import annotations

from typing import Optional

from fastapi import HTTPException


# ──────────────────────────────────────────────────────────────
# Domain errors
# ──────────────────────────────────────────────────────────────

class RouteGuideError(Exception):
    pass


class InvalidRequestError(RouteGuideError, ValueError):
    """Bad or missing bbox / route coordinates. Never retried."""


class SourceError(RouteGuideError):
    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        endpoint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class TransientSourceError(SourceError):
    """Rate limited / unavailable upstream (429, 503, 504) or transport failure."""


class PermanentSourceError(SourceError):
    """Any other upstream HTTP error status."""


class TileCoverageError(SourceError):
    """Every acquisition path failed for a majority of the route's tiles."""


class PersistenceError(RouteGuideError):
    """Storage backend failure. Propagated, never masked."""


# ──────────────────────────────────────────────────────────────
# HTTP helpers
# ──────────────────────────────────────────────────────────────

def bad_request(code: str, message: str):
    raise HTTPException(status_code=400, detail={"code": code, "message": message})


def server_error(code: str, message: str):
    raise HTTPException(status_code=500, detail={"code": code, "message": message})


def service_unavailable(code: str, message: str):
    raise HTTPException(status_code=503, detail={"code": code, "message": message})
