"""
Harness Error Taxonomy

Failures fall into two families:
- the reconciler under test misbehaved (ConvergenceError, VerificationMismatch)
- the test environment misbehaved (SetupError, TeardownError, ConfigError, client errors,
  and waits that gave up because the object could not be read at all)

Reports keep the two apart so triage is not confused.
"""

from typing import Any, Dict, Optional


class HarnessError(Exception):
    """Base class for every error raised by the harness."""


class ConfigError(HarnessError):
    """Required configuration is missing or malformed."""


class SetupError(HarnessError):
    """Provisioning a prerequisite failed before the scenario could start."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ConvergenceError(HarnessError):
    """The reconciler did not reach the expected state."""


class ConvergenceTimeout(ConvergenceError):
    """A predicate was never satisfied within the absolute timeout."""

    def __init__(
        self,
        description: str,
        elapsed: float,
        reason: Optional[str] = None,
        last_status: Optional[Dict[str, Any]] = None,
        fetch_error: Optional["TransientFetchError"] = None,
    ):
        message = f"timed out after {elapsed:.1f}s waiting for {description}"
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.description = description
        self.elapsed = elapsed
        self.reason = reason
        self.last_status = last_status
        self.fetch_error = fetch_error

    @property
    def environment_caused(self) -> bool:
        """The wait gave up because the object could not be read, not because it never converged."""
        return self.fetch_error is not None


class ReconcileFailed(ConvergenceError):
    """The object reports a terminal error that will not heal by waiting."""

    def __init__(self, message: str, last_status: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.last_status = last_status


class WaitCancelled(HarnessError):
    """A wait was aborted by the suite deadline."""


class TransientFetchError(HarnessError):
    """A fetch inside the poll loop failed; tolerated and retried."""


class VerificationMismatch(HarnessError):
    """A post-condition on the converged state or provider reality failed."""


class TeardownError(HarnessError):
    """A cleanup action failed. Logged; the unwind continues."""

    def __init__(self, description: str, cause: BaseException):
        super().__init__(f"cleanup action '{description}' failed: {cause}")
        self.description = description
        self.cause = cause


# ============================================================================
# Client errors (object store and provider API)
# ============================================================================


class ClientError(HarnessError):
    """An API call returned an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ClientError):
    pass


class AlreadyExistsError(ClientError):
    pass


class ConflictError(ClientError):
    pass


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, NotFoundError)


def is_system_under_test_failure(exc: BaseException) -> bool:
    """True when the failure points at the reconciler rather than the environment."""
    if isinstance(exc, ConvergenceTimeout) and exc.environment_caused:
        return False
    return isinstance(exc, (ConvergenceError, VerificationMismatch))
