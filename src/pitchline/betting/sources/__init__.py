"""Fixture result sources."""

from .base import ResultSource, StaticResultSource
from .common import AsyncHTTPClient, RateLimiter
from .http import HTTPResultSource

__all__ = [
    "AsyncHTTPClient",
    "HTTPResultSource",
    "RateLimiter",
    "ResultSource",
    "StaticResultSource",
]
