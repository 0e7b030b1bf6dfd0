"""
govkit Pipeline Errors

Every failure the pipeline can report derives from GovkitError. Each class
declares how the Runner treats it:

    fatal       the migration's remaining stages are abandoned
    halts_run   the remaining migrations of a batch are skipped as well

    Error                    fatal   halts_run
    ─────────────────────    ─────   ─────────
    ProvisionError           yes     yes
    EncodingError            yes     yes
    StageOrderError          yes     yes
    VariableSetError         yes     yes
    MigrationCancelled       yes     yes
    RelayError               yes     no
    OracleError              yes     no
    EnactmentTimeout         no      no
    VerificationMismatch     no      no

TransportError is the only retryable error. It never reaches the Runner
directly: the retrying port adapters convert an exhausted retry budget into
the port's own domain error.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class GovkitError(Exception):
    """Base class for pipeline errors."""

    fatal: bool = True
    halts_run: bool = False

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "message": str(self),
            "fatal": self.fatal,
        }


# =============================================================================
# TRANSPORT
# =============================================================================

class TransportError(GovkitError):
    """Transient transport failure (timeout, dropped connection, rate limit)."""
    fatal = False


class RetryExhaustedError(GovkitError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_exception: Optional[BaseException]):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry exhausted after {attempts} attempts: {last_exception}")


# =============================================================================
# PREPARE
# =============================================================================

class ProvisionError(GovkitError):
    """A prerequisite resource could not be created or found."""
    halts_run = True


class VariableSetError(GovkitError):
    """A variable set failed validation at write time."""
    halts_run = True

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class VariableConflictError(VariableSetError):
    """A migration id already holds a different variable set."""


# =============================================================================
# ENACT
# =============================================================================

class EncodingError(GovkitError):
    """Malformed operation set; always a programmer error."""
    halts_run = True


class RelayError(GovkitError):
    """The relay rejected or could not accept a payload."""

    def __init__(self, message: str, attempts: int = 1):
        self.attempts = attempts
        super().__init__(message)


class SubmissionError(RelayError):
    """Submission of a migration's proposal was rejected."""

    def __init__(self, migration_id: str, message: str, attempts: int = 1):
        self.migration_id = migration_id
        super().__init__(f"{migration_id}: {message}", attempts=attempts)


# =============================================================================
# READS
# =============================================================================

class OracleError(GovkitError):
    """A state read against the target system failed."""


class NotFoundError(OracleError):
    """The requested target, field or resource does not exist."""

    def __init__(self, target: str, field: str = ""):
        self.target = target
        self.field = field
        what = f"{target}.{field}" if field else target
        super().__init__(f"Not found: {what}")


# =============================================================================
# LIFECYCLE
# =============================================================================

class StageOrderError(GovkitError):
    """A stage was invoked before its precondition stage completed."""
    halts_run = True

    def __init__(self, migration_id: str, current: str, attempted: str):
        self.migration_id = migration_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Migration {migration_id} cannot {attempted} from stage {current}"
        )


class MigrationCancelled(GovkitError):
    """A cancellation signal was observed between or inside stages."""
    halts_run = True


class EnactmentTimeout(GovkitError):
    """The remote domain has not applied the change within the poll timeout."""
    fatal = False

    def __init__(self, migration_id: str, polls: int, waited_seconds: float):
        self.migration_id = migration_id
        self.polls = polls
        self.waited_seconds = waited_seconds
        super().__init__(
            f"Migration {migration_id} not enacted after {polls} polls "
            f"({waited_seconds:.1f}s)"
        )


class VerificationMismatch(GovkitError):
    """Post-state differs from the values captured at prepare time."""
    fatal = False

    def __init__(self, migration_id: str, failures: List[Dict[str, Any]]):
        self.migration_id = migration_id
        self.failures = failures
        names = ", ".join(str(f.get("name")) for f in failures)
        super().__init__(
            f"Migration {migration_id} failed {len(failures)} check(s): {names}"
        )
