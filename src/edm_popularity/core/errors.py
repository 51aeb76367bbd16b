"""Exceptions raised by adapters and the ingestion pipeline."""

from __future__ import annotations


class EdmPopularityError(Exception):
    """Base class for errors raised by this package."""


class AdapterError(EdmPopularityError):
    """A source feed could not be fetched or had an unexpected shape."""


class ResolutionError(EdmPopularityError):
    """A track mention could not be persisted while resolving its identity."""
