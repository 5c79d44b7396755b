"""
External Resource Provisioner

Creates the provider-side context a scenario hands to the reconciler as
pre-existing input (network, subnet, router, security group) and registers
the matching teardown on the scenario's cleanup stack.

Teardown order matters: a subnet with a router interface cannot be deleted,
so detaching and deleting are composed into one cleanup action.
"""

import logging
from typing import Dict, List, Optional

from .cleanup import CleanupHandle, CleanupStack
from .clients.provider_client import NETWORKS, ROUTERS, SECURITY_GROUPS, SUBNETS, ProviderClient
from .errors import ClientError, NotFoundError, SetupError

logger = logging.getLogger("convergence_harness.provisioner")


def _ignore_not_found(fn, *args):
    try:
        fn(*args)
    except NotFoundError:
        pass


class ExternalResourceProvisioner:
    def __init__(self, provider: ProviderClient, cleanup: CleanupStack):
        self.provider = provider
        self.cleanup = cleanup
        self.handles: Dict[str, CleanupHandle] = {}

    def find_external_network(self, name: str) -> str:
        """ID of the single external network called `name` (the floating pool)."""
        try:
            found = self.provider.list(NETWORKS, name=name, external=True)
        except ClientError as e:
            raise SetupError(f"listing external network {name} failed", e) from e
        if len(found) != 1:
            raise SetupError(f"expected exactly one external network named {name}, found {len(found)}")
        return found[0]["id"]

    def create_network(self, name: str) -> str:
        logger.info("Waiting until network is created: %s", name)
        try:
            network = self.provider.create_network(name)
        except ClientError as e:
            raise SetupError(f"creating network {name} failed", e) from e
        network_id = network["id"]
        self.handles[network_id] = self.cleanup.register(
            lambda: self.teardown_network(network_id), f"delete network {name}"
        )
        logger.info("Network is created: %s (%s)", name, network_id)
        return network_id

    def create_subnet(
        self,
        name: str,
        network_id: str,
        cidr: str,
        gateway_ip: Optional[str] = None,
        allocation_pool: Optional[Dict[str, str]] = None,
    ) -> str:
        """The subnet goes away with its network; no separate cleanup is registered."""
        logger.info("Waiting until subnet is created: %s", name)
        pools: List[Dict[str, str]] = [allocation_pool] if allocation_pool else []
        try:
            subnet = self.provider.create_subnet(name, network_id, cidr, gateway_ip, pools)
        except ClientError as e:
            raise SetupError(f"creating subnet {name} failed", e) from e
        logger.info("Subnet is created: %s (%s)", name, subnet["id"])
        return subnet["id"]

    def create_router(
        self,
        name: str,
        gateway_network_id: str,
        subnet_id_to_attach: Optional[str] = None,
    ) -> str:
        logger.info("Waiting until router is created: %s", name)
        try:
            router = self.provider.create_router(name, gateway_network_id)
        except ClientError as e:
            raise SetupError(f"creating router {name} failed", e) from e
        router_id = router["id"]
        # registered before attaching so a failed attach still deletes the router
        handle = self.cleanup.register(
            lambda: self.teardown_router(router_id, subnet_id_to_attach), f"delete router {name}"
        )
        self.handles[router_id] = handle
        if subnet_id_to_attach:
            try:
                self.provider.add_router_interface(router_id, subnet_id_to_attach)
            except ClientError as e:
                raise SetupError(f"attaching subnet {subnet_id_to_attach} to router {name} failed", e) from e
        logger.info("Router is created: %s (%s)", name, router_id)
        return router_id

    def create_security_group(self, name: str, description: Optional[str] = None) -> str:
        logger.info("Waiting until security group is created: %s", name)
        try:
            group = self.provider.create_security_group(name, description if description is not None else name)
        except ClientError as e:
            raise SetupError(f"creating security group {name} failed", e) from e
        group_id = group["id"]
        self.handles[group_id] = self.cleanup.register(
            lambda: self.teardown_security_group(group_id), f"delete security group {name}"
        )
        logger.info("Security group is created: %s (%s)", name, group_id)
        return group_id

    def release(self, resource_id: str) -> bool:
        """Drop a registered teardown, e.g. after tearing the resource down early."""
        handle = self.handles.pop(resource_id, None)
        return handle is not None and self.cleanup.remove(handle)

    # Teardown

    def teardown_router(self, router_id: str, attached_subnet_id: Optional[str] = None):
        """Detach the interface, then delete: one step, never reordered."""
        logger.info("Waiting until router is deleted: %s", router_id)
        if attached_subnet_id:
            _ignore_not_found(self.provider.remove_router_interface, router_id, attached_subnet_id)
        _ignore_not_found(self.provider.delete, ROUTERS, router_id)
        logger.info("Router is deleted: %s", router_id)

    def teardown_network(self, network_id: str, router_id: Optional[str] = None):
        """Delete the network's subnets (detaching them from `router_id` first), then the network."""
        logger.info("Waiting until network is deleted: %s", network_id)
        for subnet in self.provider.list(SUBNETS, network_id=network_id):
            if router_id:
                _ignore_not_found(self.provider.remove_router_interface, router_id, subnet["id"])
            _ignore_not_found(self.provider.delete, SUBNETS, subnet["id"])
        _ignore_not_found(self.provider.delete, NETWORKS, network_id)
        logger.info("Network is deleted: %s", network_id)

    def teardown_security_group(self, group_id: str):
        _ignore_not_found(self.provider.delete, SECURITY_GROUPS, group_id)
        logger.info("Security group is deleted: %s", group_id)
