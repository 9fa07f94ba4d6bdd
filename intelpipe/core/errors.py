"""Pipeline exception taxonomy."""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PipelineError):
    """Source or alert configuration is invalid."""


class SourceError(PipelineError):
    """A whole source could not be collected."""

    def __init__(self, source: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"{source}: {message}")
        self.source = source
        self.status_code = status_code


class TransientSourceError(SourceError):
    """Timeout, 5xx or rate limiting; safe to retry later."""


class SourceAuthError(SourceError):
    """Credentials missing or rejected; retrying will not help."""


class EnrichmentError(PipelineError):
    """An enrichment provider failed for one entity."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class StorageError(PipelineError):
    """Writing a processed item to the store failed."""
