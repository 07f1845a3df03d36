#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports. Each stage of a
digest run raises one of these; the run state machine records the message.
"""

from typing import Dict, Any, Optional


class DigestError(Exception):
    """Base class for digest runner failures.

    Attributes:
        details: Optional payload for diagnostics (URLs, status codes, ids).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.details = details or {}


class PreconditionError(DigestError):
    """Global settings lack a credential or sender; raised before any network I/O."""


class SourceFetchError(DigestError):
    """A source could not be fetched or parsed."""


class SourceTimeoutError(SourceFetchError):
    """A source fetch exceeded its configured timeout."""

    def __init__(self, url: str, timeout_seconds: int):
        super().__init__(
            f"Source fetch timed out after {timeout_seconds}s: {url}",
            details={"url": url, "timeout_seconds": timeout_seconds},
        )


class ProviderError(DigestError):
    """The AI provider failed or returned a response without the expected text."""


class TransportError(DigestError):
    """The email API rejected the message or did not return a message id."""


class WebSearchError(DigestError):
    """The web search API failed."""


class ConfigSetNotFoundError(DigestError):
    """No config set exists with the requested id."""


class RunInProgressError(DigestError):
    """A config set already has a non-terminal run."""

    def __init__(self, config_set_id: int, run_id: int):
        super().__init__(
            f"Config set {config_set_id} already has a run in progress (run {run_id})",
            details={"config_set_id": config_set_id, "run_id": run_id},
        )


class RunReclaimedError(DigestError):
    """The run was force-failed by the stale-run reclaimer while still executing."""

    def __init__(self, run_id: int):
        super().__init__(f"Run {run_id} was marked failed by the stale-run reclaimer", details={"run_id": run_id})


class CatalogError(DigestError):
    """The YAML catalog describes something the store cannot accept."""


__all__ = [
    "DigestError",
    "PreconditionError",
    "SourceFetchError",
    "SourceTimeoutError",
    "ProviderError",
    "TransportError",
    "WebSearchError",
    "ConfigSetNotFoundError",
    "RunInProgressError",
    "RunReclaimedError",
    "CatalogError",
]
