"""
Reconciliation Driver

Walks one declarative object through its lifecycle:

  ABSENT -> CREATED -> AWAITING_FIRST_CONVERGENCE -> CONVERGED
    [-> STATE_DROPPED]                      (recovery variant only)
    -> AWAITING_RECONCILE_TRIGGER -> AWAITING_SECOND_CONVERGENCE -> CONVERGED
  -> DELETING -> AWAITING_DELETION_CONVERGENCE -> GONE

The reconciler is never called directly. Every transition either writes the
object (create, annotate, delete) or observes it through the poller.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .cleanup import CleanupHandle, CleanupStack
from .clients.store_client import ObjectKey, ObjectStoreClient, new_object
from .config import HarnessConfig, WaitTier
from .diagnostics import step
from .errors import ClientError, HarnessError, SetupError, VerificationMismatch
from .poller import (
    OPERATION_ANNOTATION,
    OPERATION_RECONCILE,
    Poller,
    operation_annotation_removed,
    operation_annotation_removed_since,
)

logger = logging.getLogger("convergence_harness.driver")

USE_FLOW_ANNOTATION = "reconciler.convergence.dev/use-flow"
SECRET_NAME = "cloudprovider"
PROVIDER_TYPE = "openstack"


class FlowUsage(Enum):
    USE_LEGACY = "legacy"
    MIGRATE_FROM_LEGACY = "migrate"
    USE_FLOW = "flow"
    USE_FLOW_RECOVER_STATE = "flow-recover-state"

    @property
    def creates_with_flow(self) -> bool:
        return self in (FlowUsage.USE_FLOW, FlowUsage.USE_FLOW_RECOVER_STATE)

    @property
    def trigger_annotations(self) -> Dict[str, str]:
        """Annotations added next to the operation annotation when re-triggering."""
        if self is FlowUsage.MIGRATE_FROM_LEGACY:
            return {USE_FLOW_ANNOTATION: "true"}
        return {}


class DriverState(Enum):
    ABSENT = "Absent"
    CREATED = "Created"
    AWAITING_FIRST_CONVERGENCE = "AwaitingFirstConvergence"
    CONVERGED = "Converged"
    STATE_DROPPED = "StateDropped"
    AWAITING_RECONCILE_TRIGGER = "AwaitingReconcileTrigger"
    AWAITING_SECOND_CONVERGENCE = "AwaitingSecondConvergence"
    DELETING = "Deleting"
    AWAITING_DELETION_CONVERGENCE = "AwaitingDeletionConvergence"
    GONE = "Gone"


_TRANSITIONS = {
    DriverState.ABSENT: {DriverState.CREATED},
    DriverState.CREATED: {DriverState.AWAITING_FIRST_CONVERGENCE, DriverState.DELETING},
    DriverState.AWAITING_FIRST_CONVERGENCE: {DriverState.CONVERGED, DriverState.DELETING},
    DriverState.CONVERGED: {
        DriverState.STATE_DROPPED,
        DriverState.AWAITING_RECONCILE_TRIGGER,
        DriverState.DELETING,
    },
    DriverState.STATE_DROPPED: {DriverState.AWAITING_RECONCILE_TRIGGER, DriverState.DELETING},
    DriverState.AWAITING_RECONCILE_TRIGGER: {DriverState.AWAITING_SECOND_CONVERGENCE, DriverState.DELETING},
    DriverState.AWAITING_SECOND_CONVERGENCE: {DriverState.CONVERGED, DriverState.DELETING},
    DriverState.DELETING: {DriverState.AWAITING_DELETION_CONVERGENCE},
    DriverState.AWAITING_DELETION_CONVERGENCE: {DriverState.GONE},
    DriverState.GONE: set(),
}


@dataclass
class ConvergenceRecord:
    """Status captured before a fault, compared after recovery."""

    state: Optional[str]
    provider_status: Any


class ReconciliationDriver:
    def __init__(
        self,
        store: ObjectStoreClient,
        config: HarnessConfig,
        cleanup: CleanupStack,
        poller: Poller,
        namespace: str,
        kind: str,
        name: str,
        decode_status: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ):
        self.store = store
        self.config = config
        self.cleanup = cleanup
        self.poller = poller
        self.teardown_poller = poller.detached()
        self.namespace = namespace
        self.key = ObjectKey(kind, namespace, name)
        self.decode_status = decode_status or (lambda raw: raw)
        self.state = DriverState.ABSENT
        self.obj: Optional[Dict[str, Any]] = None
        self._object_cleanup: Optional[CleanupHandle] = None

    def _transition(self, to: DriverState):
        if to not in _TRANSITIONS[self.state]:
            raise HarnessError(f"{self.key}: illegal transition {self.state.value} -> {to.value}")
        logger.debug("%s: %s -> %s", self.key, self.state.value, to.value)
        self.state = to

    # Prerequisites

    def setup_prerequisites(self, cloud_profile_config: Dict[str, Any], shoot: Optional[Dict[str, Any]] = None):
        """Namespace, cluster and credential secret; the reconciler refuses to act without them."""
        step(logger, "create namespace for test execution", namespace=self.namespace)
        namespace = new_object("Namespace", self.namespace)
        cluster = new_object(
            "Cluster",
            self.namespace,
            spec={
                "cloud_profile": {
                    "kind": "CloudProfile",
                    "spec": {"provider_config": cloud_profile_config},
                },
                "seed": {},
                "shoot": shoot or {},
            },
        )
        secret = new_object("Secret", SECRET_NAME, self.namespace, data=self.config.secret_data())

        created = []
        self.cleanup.register(
            lambda: self._teardown_prerequisites(created), f"delete environment objects in {self.namespace}"
        )
        for obj in (namespace, cluster, secret):
            try:
                self.store.create(obj)
            except ClientError as e:
                raise SetupError(f"creating {ObjectKey.of(obj)} failed", e) from e
            created.append(ObjectKey.of(obj))

    def _teardown_prerequisites(self, keys):
        """The reconciler needs the cluster and secret until the object under test is gone."""
        if self.state not in (DriverState.ABSENT, DriverState.GONE) and self.store.exists(self.key):
            raise HarnessError(f"{self.key} still exists; keeping the environment objects in {self.namespace}")
        for key in reversed(keys):
            self.store.delete_ignoring_not_found(key)

    # Lifecycle

    def create(self, spec: Dict[str, Any], annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Create the object under test. A rejection is a setup bug and is not
        retried. Once created, a fallback deletion is registered so a failed
        run never leaves the object (and the reconciler's resources) behind.
        """
        step(logger, f"create {self.key.kind.lower()}", key=str(self.key))
        obj = new_object(self.key.kind, self.key.name, self.namespace, spec=spec, annotations=annotations)
        try:
            self.obj = self.store.create(obj)
        except ClientError as e:
            raise SetupError(f"creating {self.key} failed", e) from e
        self._object_cleanup = self.cleanup.register(self._fallback_delete, f"delete {self.key}")
        self._transition(DriverState.CREATED)
        return self.obj

    def await_convergence(self, tier: Optional[WaitTier] = None) -> Dict[str, Any]:
        step(logger, f"wait until {self.key.kind.lower()} is ready")
        if self.state is DriverState.CREATED:
            self._transition(DriverState.AWAITING_FIRST_CONVERGENCE)
        elif self.state is not DriverState.AWAITING_SECOND_CONVERGENCE:
            raise HarnessError(f"{self.key}: cannot await convergence from {self.state.value}")
        self.obj = self.poller.wait_until_ready(self.store, self.key, tier or self.config.timeouts.creation)
        self._transition(DriverState.CONVERGED)
        return self.obj

    def refresh(self) -> Dict[str, Any]:
        self.obj = self.store.get(self.key)
        return self.obj

    def provider_status(self) -> Any:
        raw = (self.refresh().get("status") or {}).get("provider_status")
        if raw is None:
            raise VerificationMismatch(f"{self.key} has no provider status")
        return self.decode_status(raw)

    def capture_record(self) -> ConvergenceRecord:
        state = (self.refresh().get("status") or {}).get("state")
        return ConvergenceRecord(state=state, provider_status=self.provider_status())

    def inject_state_loss(self, baseline_state: str) -> ConvergenceRecord:
        """
        Simulate an operator losing the reconciler's memory: clear the
        provider status and replace the persisted state. This is the only
        status write the harness ever makes.
        """
        step(logger, "drop state for testing recover")
        record = self.capture_record()
        self.store.patch_status(self.key, {"provider_status": None, "state": baseline_state})
        self._transition(DriverState.STATE_DROPPED)
        return record

    def trigger_reconcile(self, extra_annotations: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Set the operation annotation and wait for the reconciler to pick it up.
        The baseline resource version rules out a stale copy that merely
        lacks the annotation.
        """
        step(logger, f"triggering {self.key.kind.lower()} reconciliation")
        baseline = self.refresh()["resource_version"]
        annotations = {OPERATION_ANNOTATION: OPERATION_RECONCILE}
        annotations.update(extra_annotations or {})
        self.store.patch(self.key, {"annotations": annotations})
        self._transition(DriverState.AWAITING_RECONCILE_TRIGGER)

        self.poller.wait_tier(
            lambda: self.store.get(self.key),
            operation_annotation_removed_since(baseline),
            self.config.timeouts.reconcile_trigger,
            f"{self.key} reconciliation to start",
        )
        self._transition(DriverState.AWAITING_SECOND_CONVERGENCE)
        return self.await_convergence()

    def await_pickup(self) -> Dict[str, Any]:
        """
        Wait until nothing is queued for the reconciler and the object still
        reports ready. Runs before every re-trigger; after a state drop it
        also shows that dropping state alone does not make it reconcile again.
        """
        self.poller.wait_tier(
            lambda: self.store.get(self.key),
            operation_annotation_removed,
            self.config.timeouts.reconcile_trigger,
            f"{self.key} operation annotation to be removed",
        )
        self.obj = self.poller.wait_until_ready(self.store, self.key, self.config.timeouts.creation)
        return self.obj

    def delete(self, tier: Optional[WaitTier] = None):
        step(logger, f"delete {self.key.kind.lower()}")
        self._transition(DriverState.DELETING)
        self.store.delete_ignoring_not_found(self.key)
        self._transition(DriverState.AWAITING_DELETION_CONVERGENCE)
        step(logger, f"wait until {self.key.kind.lower()} is deleted")
        self.poller.wait_until_deleted(self.store, self.key, tier or self.config.timeouts.deletion)
        self._transition(DriverState.GONE)
        if self._object_cleanup is not None:
            self.cleanup.remove(self._object_cleanup)
            self._object_cleanup = None

    def _fallback_delete(self):
        if self.state is DriverState.GONE:
            return
        self.store.delete_ignoring_not_found(self.key)
        self.teardown_poller.wait_until_deleted(self.store, self.key, self.config.timeouts.deletion)
        self.state = DriverState.GONE

    def check_state_recovery(self, record: ConvergenceRecord):
        step(logger, "check state recovery")
        current = self.capture_record()
        if current.state != record.state:
            raise VerificationMismatch(
                f"{self.key}: persisted state changed after recovery: {record.state!r} -> {current.state!r}"
            )
        if current.provider_status != record.provider_status:
            raise VerificationMismatch(
                f"{self.key}: provider status changed after recovery: "
                f"{record.provider_status!r} -> {current.provider_status!r}"
            )
