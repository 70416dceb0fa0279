"""Exception hierarchy for the migration pipeline."""

from typing import Any, Dict, List, Optional


class MigrationError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(MigrationError):
    """Missing or malformed configuration. Fatal, never retried."""


class CredentialVaultError(MigrationError):
    """Ciphertext could not be authenticated or decoded."""


class SourceAccessError(MigrationError):
    """The source platform could not be reached or refused the request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SessionExpiredError(SourceAccessError):
    """Authentication was rejected even after re-establishing the session."""


class UnsupportedEntityError(MigrationError):
    """The provider does not declare the requested entity type."""


class AssistantError(MigrationError):
    """The external assistant returned an unusable response."""


class MappingSpecError(MigrationError):
    """A mapping spec failed structural validation."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, str]]] = None):
        super().__init__(message)
        self.errors = errors or []


class ValidationFailedError(MigrationError):
    """Canonical records failed validation; Load is blocked."""

    def __init__(self, message: str, report: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.report = report or {}


class ApprovalRequiredError(MigrationError):
    """The run is waiting for a human to approve the mapping spec."""


class InvalidStateError(MigrationError):
    """The requested action is not allowed in the run's current status."""


class RunNotFoundError(MigrationError):
    """No run exists with the given id."""
