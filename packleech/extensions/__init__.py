"""Transport extensions."""

from __future__ import annotations

from packleech.extensions.webseed import (
    Fetcher,
    HttpFetcher,
    RangeRequest,
    resolve_webseed_url,
)

__all__ = ["Fetcher", "HttpFetcher", "RangeRequest", "resolve_webseed_url"]
