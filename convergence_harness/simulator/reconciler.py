#!/usr/bin/env python3
"""
Reference Reconciler

A small control loop for Infrastructure and Bastion objects, used to run the
harness locally. It only talks to the object store and the provider over
their HTTP APIs, exactly like an external reconciler would.

Implements:
- Finalizer handling and deletion of the resources it created
- Reconcile on unobserved generation, operation annotation, or retryable error
- Legacy and flow strategies with different persisted state formats
- Migration from legacy to flow state
- Recovery from lost state by looking resources up by name (flow only)
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError

from ..clients.provider_client import (
    FLOATING_IPS,
    KEYPAIRS,
    NETWORKS,
    ROUTERS,
    SECURITY_GROUP_RULES,
    SECURITY_GROUPS,
    SERVERS,
    SUBNETS,
    ProviderClient,
)
from ..clients.store_client import ObjectKey, ObjectStoreClient
from ..driver import SECRET_NAME, USE_FLOW_ANNOTATION
from ..errors import AlreadyExistsError, ClientError, NotFoundError
from ..flow_state import decode_state, encode_flow_state, encode_legacy_state
from ..poller import NON_RETRYABLE_CODES, OPERATION_ANNOTATION, OPERATION_RECONCILE
from ..schemas import (
    BastionOptions,
    FloatingPoolStatus,
    InfrastructureConfig,
    InfrastructureStatus,
    NetworkStatus,
    NodeStatus,
    RouterStatus,
    SecurityGroupStatus,
    ShootInfrastructureConfig,
    SubnetStatus,
)

logger = logging.getLogger("convergence_harness.simulator.reconciler")

FINALIZER = "extensions.convergence.dev/openstack"
INFRASTRUCTURE = "Infrastructure"
BASTION = "Bastion"

ERR_CONFIGURATION_PROBLEM = "ERR_CONFIGURATION_PROBLEM"


class ReconcileError(Exception):
    def __init__(self, description: str, codes: Optional[List[str]] = None):
        super().__init__(description)
        self.description = description
        self.codes = codes or []


@dataclass
class ReconciliationResult:
    """Result of a reconciliation cycle."""

    success: bool = True
    reconciled: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    duration_ms: float = 0


class ReferenceReconciler:
    """
    Main reconciliation loop.

    Runs in a thread; `stop()` ends the loop after the current cycle.
    """

    def __init__(self, store: ObjectStoreClient, provider: ProviderClient, interval_seconds: float = 0.5):
        self.store = store
        self.provider = provider
        self.interval = interval_seconds
        self.running = False
        self.handlers: Dict[str, Dict[str, Callable]] = {
            INFRASTRUCTURE: {"reconcile": self._reconcile_infrastructure, "delete": self._delete_infrastructure},
            BASTION: {"reconcile": self._reconcile_bastion, "delete": self._delete_bastion},
        }

    def run(self):
        """Main reconciliation loop."""
        self.running = True
        logger.info("Reference reconciler: starting main loop")

        while self.running:
            try:
                result = self.reconcile()
                for error in result.errors:
                    logger.warning("Reconciliation error: %s", error)
            except Exception as e:
                logger.error("Reference reconciler: unexpected error: %s", e)

            time.sleep(self.interval)

    def stop(self):
        """Stop the reconciliation loop."""
        self.running = False

    def reconcile(self) -> ReconciliationResult:
        """One pass over every object of every handled kind."""
        start_time = time.time()
        result = ReconciliationResult()
        for kind in self.handlers:
            for obj in self.store.list(kind):
                try:
                    if self._handle(kind, obj):
                        result.reconciled.append(str(ObjectKey.of(obj)))
                except Exception as e:
                    result.success = False
                    result.errors.append(f"{ObjectKey.of(obj)}: {e}")
        result.duration_ms = (time.time() - start_time) * 1000
        return result

    # ------------------------------------------------------------------
    # Object handling
    # ------------------------------------------------------------------

    def _handle(self, kind: str, obj: Dict[str, Any]) -> bool:
        key = ObjectKey.of(obj)
        finalizers = obj.get("finalizers") or []

        if obj.get("deletion_timestamp"):
            if FINALIZER not in finalizers:
                return False
            logger.info("Deleting %s", key)
            self.handlers[kind]["delete"](obj)
            self.store.patch(key, {"finalizers": [f for f in finalizers if f != FINALIZER]})
            return True

        if FINALIZER not in finalizers:
            obj = self.store.patch(key, {"finalizers": finalizers + [FINALIZER]})

        annotations = obj.get("annotations") or {}
        status = obj.get("status") or {}
        requested = annotations.get(OPERATION_ANNOTATION) == OPERATION_RECONCILE
        unobserved = status.get("observed_generation", 0) < obj["generation"]
        last_error = status.get("last_error") or {}
        retry = bool(last_error) and not set(last_error.get("codes") or []) & NON_RETRYABLE_CODES
        if not (requested or unobserved or retry):
            return False

        operation = "Reconcile" if status.get("last_operation") else "Create"
        # Processing must be visible before the annotation disappears.
        self.store.patch_status(
            key,
            {"ready": False, "last_operation": {"type": operation, "state": "Processing", "description": "reconciling"}},
        )
        if requested:
            obj = self.store.patch(key, {"annotations": {OPERATION_ANNOTATION: None}})

        try:
            patch = self.handlers[kind]["reconcile"](obj)
        except ReconcileError as e:
            self._report_error(key, obj, operation, e.description, e.codes)
            return True
        except ClientError as e:
            self._report_error(key, obj, operation, str(e), [])
            return True

        patch.update(
            {
                "ready": True,
                "observed_generation": obj["generation"],
                "last_error": None,
                "last_operation": {"type": operation, "state": "Succeeded", "description": f"{kind} reconciled"},
            }
        )
        self.store.patch_status(key, patch)
        logger.info("Reconciled %s", key)
        return True

    def _report_error(self, key: ObjectKey, obj, operation: str, description: str, codes: List[str]):
        logger.warning("Reconciling %s failed: %s", key, description)
        self.store.patch_status(
            key,
            {
                "ready": False,
                "observed_generation": obj["generation"],
                "last_error": {"description": description, "codes": codes},
                "last_operation": {"type": operation, "state": "Error", "description": description},
            },
        )

    def _cluster(self, namespace: str) -> Dict[str, Any]:
        try:
            cluster = self.store.get(ObjectKey("Cluster", "", namespace))
            self.store.get(ObjectKey("Secret", namespace, SECRET_NAME))
        except NotFoundError as e:
            raise ReconcileError(f"environment not ready: {e}") from e
        return cluster

    # ------------------------------------------------------------------
    # Provider helpers
    # ------------------------------------------------------------------

    def _get(self, kind: str, resource_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not resource_id:
            return None
        try:
            resource = self.provider.get(kind, resource_id)
        except NotFoundError:
            return None
        if resource.get("status") == "PENDING_DELETE":
            return None
        return resource

    def _ensure(
        self,
        kind: str,
        known_id: Optional[str],
        name: str,
        create: Callable[[], Dict[str, Any]],
        lookup_by_name: bool,
        **filters: Any,
    ) -> Dict[str, Any]:
        resource = self._get(kind, known_id)
        if resource is not None:
            return resource
        if lookup_by_name:
            resource = self.provider.find_by_name(kind, name, **filters)
            if resource is not None:
                logger.info("Adopted %s %s (%s) by name", kind, name, resource.get("id", name))
                return resource
        return create()

    def _floating_network(self, pool_name: str) -> Dict[str, Any]:
        network = self.provider.find_by_name(NETWORKS, pool_name, external=True)
        if network is None:
            raise ReconcileError(f"floating pool network {pool_name} not found", [ERR_CONFIGURATION_PROBLEM])
        return network

    def _delete_ignoring_not_found(self, kind: str, resource_id: Optional[str]):
        if not resource_id:
            return
        try:
            self.provider.delete(kind, resource_id)
        except NotFoundError:
            pass

    # ------------------------------------------------------------------
    # Infrastructure
    # ------------------------------------------------------------------

    @staticmethod
    def _provider_config(obj: Dict[str, Any]) -> InfrastructureConfig:
        try:
            return InfrastructureConfig.model_validate((obj.get("spec") or {}).get("provider_config") or {})
        except ValidationError as e:
            raise ReconcileError(f"invalid provider config: {e}", [ERR_CONFIGURATION_PROBLEM]) from e

    @staticmethod
    def _state_entries(obj: Dict[str, Any]) -> Dict[str, str]:
        try:
            _, entries = decode_state((obj.get("status") or {}).get("state"))
        except ValueError as e:
            raise ReconcileError(str(e), [ERR_CONFIGURATION_PROBLEM]) from e
        return entries

    def _reconcile_infrastructure(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        namespace = obj["namespace"]
        spec = obj.get("spec") or {}
        self._cluster(namespace)
        config = self._provider_config(obj)
        entries = self._state_entries(obj)
        use_flow = (obj.get("annotations") or {}).get(USE_FLOW_ANNOTATION) == "true"
        # Legacy trusts its state; flow falls back to lookups by name.
        lookup = use_flow

        floating = self._floating_network(config.floating_pool_name)

        if config.networks.id:
            network = self._get(NETWORKS, config.networks.id)
            if network is None:
                raise ReconcileError(f"network {config.networks.id} not found", [ERR_CONFIGURATION_PROBLEM])
        else:
            network = self._ensure(
                NETWORKS, entries.get("network_id"), namespace,
                lambda: self.provider.create_network(namespace), lookup,
            )

        subnet_name = f"{namespace}-nodes"
        subnet = self._ensure(
            SUBNETS, entries.get("subnet_id"), subnet_name,
            lambda: self.provider.create_subnet(subnet_name, network["id"], config.networks.workers),
            lookup, network_id=network["id"],
        )

        if config.networks.router:
            router = self._get(ROUTERS, config.networks.router.id)
            if router is None:
                raise ReconcileError(f"router {config.networks.router.id} not found", [ERR_CONFIGURATION_PROBLEM])
        else:
            router = self._ensure(
                ROUTERS, entries.get("router_id"), namespace,
                lambda: self.provider.create_router(namespace, floating["id"]), lookup,
            )
        if subnet["id"] not in (router.get("interfaces") or []):
            router = self.provider.add_router_interface(router["id"], subnet["id"])

        group = self._ensure(
            SECURITY_GROUPS, entries.get("security_group_id"), namespace,
            lambda: self._create_nodes_security_group(namespace), lookup,
        )

        key_name = f"{namespace}-ssh-publickey"
        keypair = self._get(KEYPAIRS, entries.get("key_pair") or (key_name if lookup else None))
        if keypair is None:
            try:
                keypair = self.provider.create_keypair(key_name, spec.get("ssh_public_key") or "")
            except AlreadyExistsError:
                keypair = self.provider.get(KEYPAIRS, key_name)

        fixed_ips = router.get("external_fixed_ips") or []
        provider_status = InfrastructureStatus(
            networks=NetworkStatus(
                id=network["id"],
                name=network["name"],
                router=RouterStatus(id=router["id"], ip=fixed_ips[0]["ip_address"] if fixed_ips else ""),
                subnets=[SubnetStatus(id=subnet["id"], purpose="nodes")],
                floating_pool=FloatingPoolStatus(id=floating["id"], name=floating["name"]),
            ),
            security_groups=[SecurityGroupStatus(id=group["id"], name=group["name"], purpose="nodes")],
            node=NodeStatus(key_name=keypair["name"]),
        )

        ids = {
            "floating_network_id": floating["id"],
            "network_id": network["id"],
            "subnet_id": subnet["id"],
            "router_id": router["id"],
            "security_group_id": group["id"],
            "key_pair": keypair["name"],
        }
        state = encode_flow_state(ids) if use_flow else encode_legacy_state(ids)
        return {"provider_status": provider_status.model_dump(), "state": state}

    def _create_nodes_security_group(self, namespace: str) -> Dict[str, Any]:
        group = self.provider.create_security_group(namespace, "Cluster Nodes")
        self.provider.create_security_group_rule(
            group["id"], direction="ingress", protocol=None, remote_group_id=group["id"],
            description="IPv4: allow all incoming traffic within the same security group",
        )
        return group

    def _delete_infrastructure(self, obj: Dict[str, Any]):
        namespace = obj["namespace"]
        try:
            config = self._provider_config(obj)
            entries = self._state_entries(obj)
        except ReconcileError as e:
            logger.warning("Nothing to delete for %s: %s", ObjectKey.of(obj), e)
            return

        def known(kind: str, key: str, name: str, **filters: Any) -> Optional[str]:
            if entries.get(key):
                return entries[key]
            found = self.provider.find_by_name(kind, name, **filters)
            return found["id"] if found else None

        network_id = config.networks.id or known(NETWORKS, "network_id", namespace)
        router_id = config.networks.router.id if config.networks.router else known(ROUTERS, "router_id", namespace)
        subnet_id = None
        if network_id:
            subnet_id = known(SUBNETS, "subnet_id", f"{namespace}-nodes", network_id=network_id)
        group_id = known(SECURITY_GROUPS, "security_group_id", namespace)

        self._delete_ignoring_not_found(KEYPAIRS, entries.get("key_pair") or f"{namespace}-ssh-publickey")
        if router_id and subnet_id:
            try:
                self.provider.remove_router_interface(router_id, subnet_id)
            except NotFoundError:
                pass
        self._delete_ignoring_not_found(SUBNETS, subnet_id)
        self._delete_ignoring_not_found(SECURITY_GROUPS, group_id)
        if not config.networks.router:
            self._delete_ignoring_not_found(ROUTERS, router_id)
        if not config.networks.id:
            self._delete_ignoring_not_found(NETWORKS, network_id)

    # ------------------------------------------------------------------
    # Bastion
    # ------------------------------------------------------------------

    def _shoot_config(self, cluster: Dict[str, Any]) -> ShootInfrastructureConfig:
        shoot = (cluster.get("spec") or {}).get("shoot") or {}
        raw = ((shoot.get("spec") or {}).get("provider") or {}).get("infrastructure_config") or {}
        try:
            return ShootInfrastructureConfig.model_validate(raw)
        except ValidationError as e:
            raise ReconcileError(f"invalid shoot infrastructure config: {e}", [ERR_CONFIGURATION_PROBLEM]) from e

    def _reconcile_bastion(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        namespace = obj["namespace"]
        cluster = self._cluster(namespace)
        options = BastionOptions.for_bastion(obj["name"])
        floating = self._floating_network(self._shoot_config(cluster).floating_pool_name)

        network = self.provider.find_by_name(NETWORKS, namespace)
        if network is None:
            raise ReconcileError(f"shoot network {namespace} not found")
        shoot_group = self.provider.find_by_name(SECURITY_GROUPS, namespace)

        group = self._ensure(
            SECURITY_GROUPS, None, options.security_group,
            lambda: self.provider.create_security_group(options.security_group, options.security_group), True,
        )
        if not self.provider.list(SECURITY_GROUP_RULES, description=options.ssh_rule_description):
            self.provider.create_security_group_rule(
                group["id"], direction="ingress", protocol="tcp", port_range_min=22, port_range_max=22,
                remote_ip_prefix="0.0.0.0/0", description=options.ssh_rule_description,
            )
        if shoot_group and not self.provider.list(SECURITY_GROUP_RULES, description=options.egress_rule_description):
            self.provider.create_security_group_rule(
                group["id"], direction="egress", protocol="tcp", port_range_min=22, port_range_max=22,
                remote_group_id=shoot_group["id"], description=options.egress_rule_description,
            )

        server = self._ensure(
            SERVERS, None, options.instance_name,
            lambda: self.provider.create_server(
                options.instance_name, network["id"], [group["id"]],
                user_data=(obj.get("spec") or {}).get("user_data") or "",
            ),
            True,
        )

        addresses = [f for f in self.provider.list(FLOATING_IPS, description=options.instance_name)
                     if f.get("status") != "PENDING_DELETE"]
        if addresses:
            address = addresses[0]
        else:
            address = self.provider.create_floating_ip(floating["id"], options.instance_name, server["id"])

        return {"ingress": {"ip": address["floating_ip_address"], "hostname": ""}}

    def _delete_bastion(self, obj: Dict[str, Any]):
        options = BastionOptions.for_bastion(obj["name"])
        for address in self.provider.list(FLOATING_IPS, description=options.instance_name):
            self._delete_ignoring_not_found(FLOATING_IPS, address["id"])
        for server in self.provider.list(SERVERS, name=options.instance_name):
            self._delete_ignoring_not_found(SERVERS, server["id"])
        for group in self.provider.list(SECURITY_GROUPS, name=options.security_group):
            self._delete_ignoring_not_found(SECURITY_GROUPS, group["id"])
