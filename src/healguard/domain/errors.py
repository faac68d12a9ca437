# src/healguard/domain/errors.py
"""
Error taxonomy shared by every layer.

The API layer maps these to HTTP status codes in one place
(see `healguard.interfaces.api.main`).
"""


class HealGuardError(Exception):
    """Base class for all engine errors."""


class ValidationError(HealGuardError):
    """Malformed input. Rejected synchronously and never retried."""


class AuthorizationError(HealGuardError):
    """Caller lacks the identity, role or approval needed for the operation."""


class NotFoundError(HealGuardError):
    """Unknown threshold / anomaly / decision / recommendation / action id."""


class ExternalDependencyError(HealGuardError):
    """Downstream store, control plane or notification channel failed."""


class AuditWriteError(ExternalDependencyError):
    """An audit entry could not be persisted."""


class ExecutionTimeoutError(HealGuardError):
    """An action handler exceeded its time budget for the current attempt."""


class ConcurrencyConflict(HealGuardError):
    """A conditional claim lost its race.

    `current_state` carries what the winner left behind so the loser can report it.
    """

    def __init__(self, message: str, current_state=None):
        super().__init__(message)
        self.current_state = current_state


class InvalidTransitionError(HealGuardError):
    """State machine transition not permitted from the current state."""


class AuditImmutableError(HealGuardError):
    """Attempt to modify or delete a persisted audit entry."""
