"""
Tiered Readiness Poller

Blocks until a predicate over the latest copy of an object holds.

Three timeouts shape every wait:
- early_timeout: suspend before the first fetch
- poll_interval: suspend between fetches
- absolute_timeout: hard ceiling, measured from the start of the wait

Predicates return None when satisfied and a short reason otherwise. They may
raise ReconcileFailed for a terminal error status, which ends the wait at once.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from .clients.store_client import ObjectKey, ObjectStoreClient
from .config import WaitTier
from .errors import (
    ConvergenceTimeout,
    NotFoundError,
    ReconcileFailed,
    TransientFetchError,
    WaitCancelled,
)
from .metrics import METRICS

logger = logging.getLogger("convergence_harness.poller")

OPERATION_ANNOTATION = "reconciler.convergence.dev/operation"
OPERATION_RECONCILE = "reconcile"

# last_error codes that waiting will not fix
NON_RETRYABLE_CODES = {"ERR_CONFIGURATION_PROBLEM", "ERR_INFRA_UNAUTHORIZED", "ERR_INFRA_QUOTA_EXCEEDED"}

Predicate = Callable[[Any], Optional[str]]


def _status_of(obj: Any) -> Optional[Dict[str, Any]]:
    if isinstance(obj, dict):
        return obj.get("status")
    return None


class Poller:
    """
    Reusable wait primitive.

    `cancel` is a suite-wide event: setting it aborts every in-flight wait.
    `clock` and `sleep` are injectable so tests can drive time.
    """

    def __init__(
        self,
        max_fetch_errors: int = 5,
        cancel: Optional[threading.Event] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.max_fetch_errors = max_fetch_errors
        self.cancel = cancel or threading.Event()
        self.clock = clock
        self._sleep = sleep

    def _suspend(self, seconds: float):
        if seconds <= 0:
            if self.cancel.is_set():
                raise WaitCancelled("wait cancelled")
            return
        if self._sleep is not None:
            self._sleep(seconds)
            if self.cancel.is_set():
                raise WaitCancelled("wait cancelled")
            return
        if self.cancel.wait(seconds):
            raise WaitCancelled("wait cancelled")

    def detached(self) -> "Poller":
        """
        Same clock and tolerance, but deaf to the suite cancel event. Cleanup
        waits use it: a cancelled run still has to wait for its deletions.
        """
        return Poller(max_fetch_errors=self.max_fetch_errors, clock=self.clock, sleep=self._sleep)

    def pause(self, seconds: float):
        """Plain settle delay that still honours the cancel event."""
        self._suspend(seconds)

    def wait_until(
        self,
        fetch: Callable[[], Any],
        predicate: Predicate,
        early_timeout: float,
        poll_interval: float,
        absolute_timeout: float,
        description: str = "condition",
        status_of: Optional[Callable[[Any], Optional[Dict[str, Any]]]] = None,
    ) -> Any:
        """Return the fetched object that satisfied the predicate."""
        start = self.clock()
        deadline = start + absolute_timeout
        predicate_name = getattr(predicate, "__name__", "predicate")
        last_reason: Optional[str] = None
        last_status: Optional[Dict[str, Any]] = None
        last_fetch_error: Optional[Exception] = None
        consecutive_errors = 0
        status_of = status_of or _status_of

        self._suspend(min(early_timeout, absolute_timeout))

        while True:
            METRICS["poll_attempts"].labels(predicate=predicate_name).inc()
            try:
                obj = fetch()
            except Exception as e:
                consecutive_errors += 1
                last_fetch_error = e
                METRICS["fetch_errors"].inc()
                logger.warning(
                    "%s: fetch failed (%d/%d tolerated): %s",
                    description, consecutive_errors, self.max_fetch_errors, e,
                )
                if consecutive_errors > self.max_fetch_errors:
                    fetch_error = TransientFetchError(f"{description}: {consecutive_errors} consecutive fetch errors")
                    raise ConvergenceTimeout(
                        description, self.clock() - start,
                        reason=f"fetch kept failing: {e}", last_status=last_status, fetch_error=fetch_error,
                    ) from fetch_error
            else:
                consecutive_errors = 0
                last_fetch_error = None
                last_status = status_of(obj)
                last_reason = predicate(obj)
                if last_reason is None:
                    elapsed = self.clock() - start
                    METRICS["convergence_seconds"].labels(phase=predicate_name).observe(elapsed)
                    logger.info("%s satisfied after %.1fs", description, elapsed)
                    return obj
                logger.debug("%s not satisfied yet: %s", description, last_reason)

            now = self.clock()
            if now >= deadline:
                reason = last_reason
                if last_fetch_error is not None:
                    reason = f"fetch failed: {last_fetch_error}"
                raise ConvergenceTimeout(description, now - start, reason=reason, last_status=last_status)
            self._suspend(min(poll_interval, deadline - now))

    def wait_tier(self, fetch, predicate: Predicate, tier: WaitTier, description: str = "condition") -> Any:
        return self.wait_until(
            fetch, predicate, tier.early_timeout, tier.poll_interval, tier.absolute_timeout, description
        )

    # Declarative objects

    def wait_until_ready(
        self, store: ObjectStoreClient, key: ObjectKey, tier: WaitTier, predicate: Optional[Predicate] = None
    ) -> Dict[str, Any]:
        return self.wait_tier(
            lambda: store.get(key), predicate or extension_object_ready, tier, f"{key} to be ready"
        )

    def wait_until_deleted(self, store: ObjectStoreClient, key: ObjectKey, tier: WaitTier):
        def fetch():
            try:
                return store.get(key)
            except NotFoundError:
                return None

        self.wait_tier(fetch, object_gone, tier, f"{key} to be deleted")


# ============================================================================
# Predicates
# ============================================================================


def extension_object_ready(obj: Dict[str, Any]) -> Optional[str]:
    """Ready once the reconciler has observed the latest generation and succeeded."""
    status = obj.get("status") or {}
    annotations = obj.get("annotations") or {}
    last_error = status.get("last_error")
    if last_error:
        codes = set(last_error.get("codes") or [])
        if codes & NON_RETRYABLE_CODES:
            raise ReconcileFailed(
                f"{obj.get('kind')} {obj.get('name')} failed: {last_error.get('description')}",
                last_status=status,
            )
        return f"error reported: {last_error.get('description')}"
    if annotations.get(OPERATION_ANNOTATION):
        return "operation annotation still present"
    if status.get("observed_generation", 0) < obj.get("generation", 0):
        return "latest generation not observed yet"
    last_operation = status.get("last_operation") or {}
    if last_operation.get("state") != "Succeeded":
        return f"last operation is {last_operation.get('state') or 'unknown'}"
    if not status.get("ready"):
        return "not ready"
    return None


def operation_annotation_removed(obj: Dict[str, Any]) -> Optional[str]:
    if (obj.get("annotations") or {}).get(OPERATION_ANNOTATION):
        return "reconciliation not started yet"
    return None


def operation_annotation_removed_since(resource_version: str) -> Predicate:
    """
    The annotation must be gone from a copy newer than `resource_version`.
    An old copy without the annotation is a stale read, not a started reconcile.
    """

    def predicate(obj: Dict[str, Any]) -> Optional[str]:
        if obj.get("resource_version") == resource_version:
            return "cache not updated yet"
        return operation_annotation_removed(obj)

    predicate.__name__ = "operation_annotation_removed_since"
    return predicate


def object_gone(obj: Optional[Dict[str, Any]]) -> Optional[str]:
    if obj is None:
        return None
    if obj.get("deletion_timestamp"):
        return "deletion in progress"
    return "object still exists"
