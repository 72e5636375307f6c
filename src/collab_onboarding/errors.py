"""
Error taxonomy for the onboarding flow.

Every failure raised while running a step is mapped to one ErrorKind.
The kind decides recoverability: network, session, migration and database
errors are recovered locally; validation and unknown errors go back to the
caller.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from enum import Enum


class ErrorKind(str, Enum):
    """Classified error kinds."""
    NETWORK = "network"
    SESSION = "session"
    VALIDATION = "validation"
    MIGRATION = "migration"
    DATABASE = "database"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({
    ErrorKind.NETWORK,
    ErrorKind.SESSION,
    ErrorKind.MIGRATION,
    ErrorKind.DATABASE,
})


def is_retryable(kind: ErrorKind) -> bool:
    """Check whether an error kind is locally recoverable."""
    return kind in RETRYABLE_KINDS


# =============================================================================
# Exceptions
# =============================================================================


class OnboardingError(Exception):
    """Base class for onboarding failures. Subclasses pin their kind."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class NetworkError(OnboardingError):
    kind = ErrorKind.NETWORK


class RemoteTimeoutError(NetworkError):
    """A remote call exceeded the configured timeout."""


class OfflineError(NetworkError):
    """The device is offline; no round-trip was attempted."""


class SessionError(OnboardingError):
    kind = ErrorKind.SESSION


class MigrationError(OnboardingError):
    kind = ErrorKind.MIGRATION


class DatabaseError(OnboardingError):
    kind = ErrorKind.DATABASE


class StepValidationError(OnboardingError):
    """Payload failed field rules. Never retried."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: list[str], step_id: str | None = None):
        self.errors = list(errors)
        self.step_id = step_id
        super().__init__("Validation failed: " + "; ".join(self.errors))


class BackendNotConfiguredError(OnboardingError):
    """Supabase credentials are missing."""


# =============================================================================
# Error Records
# =============================================================================


@dataclass
class ErrorRecord:
    """One caught failure, kept in the capped local error log."""
    operation: str
    error_kind: ErrorKind
    message: str
    occurred_at: str = ""
    retry_count: int = 0
    step_id: str | None = None

    def __post_init__(self):
        if not self.occurred_at:
            self.occurred_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["error_kind"] = self.error_kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ErrorRecord":
        data = dict(data)
        data["error_kind"] = ErrorKind(data.get("error_kind", "unknown"))
        return cls(**data)
