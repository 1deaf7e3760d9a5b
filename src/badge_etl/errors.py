"""badge_etl.errors

Exception hierarchy for the ingestion pipeline.

Lower layers (vault, extractor, reconciler) raise; the retry orchestrator is
the only place that catches them and turns them into a scraping-log update.
Duplicate visit keys on insert are never raised: storage reports them as
``None``. Only updates that collide with an existing key raise.
"""

from __future__ import annotations


class BadgeEtlError(Exception):
    """Base class for all badge_etl errors."""


class ConfigurationError(BadgeEtlError):
    """Missing credential, missing key or no active season. Never retried."""


class CredentialError(BadgeEtlError):
    """Raised when the vault cannot encrypt or decrypt a stored credential."""


class ExtractionError(BadgeEtlError):
    """Raised when the portal cannot be read."""


class LoginError(ExtractionError):
    """Portal rejected the login, or the sign-in prompt is still showing."""


class PortalTimeoutError(ExtractionError):
    """A navigation or selector wait exceeded its timeout."""


class VisitLockedError(BadgeEtlError):
    """Raised on an attempt to edit or delete an automated (scraped) visit."""


class NotFoundError(BadgeEtlError):
    """A visit, season or credential id does not exist."""


class IngestionFailed(BadgeEtlError):
    """All ingestion attempts were exhausted.

    Carries the scraping-log id that was marked ``failed`` and the last
    error message so callers can surface it without re-querying storage.
    """

    def __init__(self, log_id: int, attempts: int, last_error: str) -> None:
        super().__init__(
            f"Failed after {attempts} attempts. Last error: {last_error}"
        )
        self.log_id = log_id
        self.attempts = attempts
        self.last_error = last_error


class DuplicateVisitError(BadgeEtlError):
    """An update would give a visit the same key as an existing visit."""
