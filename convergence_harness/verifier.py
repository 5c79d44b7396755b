#!/usr/bin/env python3
"""
Outcome Verifier

Cross-checks what the reconciler claims in an object's status against what
the provider actually holds.

Implements:
- Structural checks on the decoded provider status
- Existence checks after creation
- Absence checks after deletion, honouring pre-existing inputs
- Bastion resource and port reachability checks

Absence is eventually consistent: a resource still visible right after its
delete is retried for `consistency_grace` seconds before it counts as a leak.
"""

import logging
import socket
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .clients.provider_client import (
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
from .config import HarnessConfig
from .errors import ConvergenceTimeout, NotFoundError, VerificationMismatch
from .poller import Poller
from .schemas import InfrastructureConfig, InfrastructureStatus

logger = logging.getLogger("convergence_harness.verifier")


@dataclass
class CheckResult:
    """Result of a single verification check."""

    name: str
    passed: bool
    message: str


@dataclass
class VerificationReport:
    subject: str
    results: List[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    def check(self, name: str, passed: bool, message: str) -> bool:
        self.results.append(CheckResult(name=name, passed=passed, message=message))
        log = logger.info if passed else logger.error
        log("%s %s: %s", "✓" if passed else "✗", name, message)
        return passed

    def raise_if_failed(self):
        failed = [r for r in self.results if not r.passed]
        if failed:
            details = "; ".join(f"{r.name}: {r.message}" for r in failed)
            raise VerificationMismatch(f"{self.subject}: {len(failed)} check(s) failed: {details}")


@dataclass
class InfrastructureIdentifiers:
    network_id: Optional[str] = None
    subnet_id: Optional[str] = None
    router_id: Optional[str] = None
    security_group_id: Optional[str] = None
    key_pair: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "network_id": self.network_id,
            "subnet_id": self.subnet_id,
            "router_id": self.router_id,
            "security_group_id": self.security_group_id,
            "key_pair": self.key_pair,
        }


class OutcomeVerifier:
    def __init__(self, provider: ProviderClient, config: HarnessConfig, poller: Poller):
        self.provider = provider
        self.config = config
        self.poller = poller

    # Existence primitives

    def lookup(self, kind: str, resource_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.provider.get(kind, resource_id)
        except NotFoundError:
            return None

    def alive(self, kind: str, resource_id: str) -> bool:
        resource = self.lookup(kind, resource_id)
        return resource is not None and resource.get("status") != "PENDING_DELETE"

    def absent_within_grace(self, kind: str, resource_id: str) -> bool:
        """Not-found is success; found is retried until the grace window closes."""
        try:
            self.poller.wait_until(
                lambda: self.lookup(kind, resource_id),
                lambda resource: None if resource is None else f"still {resource.get('status', 'present')}",
                early_timeout=0,
                poll_interval=self.config.grace_poll_interval,
                absolute_timeout=self.config.consistency_grace,
                description=f"{kind}/{resource_id} to disappear",
            )
            return True
        except ConvergenceTimeout as e:
            if e.environment_caused:
                raise
            return False

    def list_empty_within_grace(self, kind: str, **filters: Any) -> bool:
        try:
            self.poller.wait_until(
                lambda: self.provider.list(kind, **filters),
                lambda found: None if not found else f"{len(found)} left",
                early_timeout=0,
                poll_interval=self.config.grace_poll_interval,
                absolute_timeout=self.config.consistency_grace,
                description=f"{kind} {filters} to disappear",
            )
            return True
        except ConvergenceTimeout as e:
            if e.environment_caused:
                raise
            return False

    def active_within_grace(self, kind: str, resource_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.poller.wait_until(
                lambda: self.provider.get(kind, resource_id),
                lambda resource: None if resource.get("status") == "ACTIVE" else f"status {resource.get('status')}",
                early_timeout=0,
                poll_interval=self.config.grace_poll_interval,
                absolute_timeout=self.config.consistency_grace,
                description=f"{kind}/{resource_id} to be ACTIVE",
            )
        except ConvergenceTimeout as e:
            if e.environment_caused:
                raise
            return self.lookup(kind, resource_id)

    # Infrastructure

    def verify_creation(
        self, status: InfrastructureStatus, provider_config: InfrastructureConfig
    ) -> InfrastructureIdentifiers:
        report = VerificationReport("infrastructure creation")
        ids = InfrastructureIdentifiers()

        # router exists and is active
        router = self.active_within_grace(ROUTERS, status.networks.router.id)
        if report.check("router exists", router is not None, f"router {status.networks.router.id}"):
            ids.router_id = router["id"]
            report.check("router active", router.get("status") == "ACTIVE", f"status {router.get('status')}")
            fixed_ips = router.get("external_fixed_ips") or []
            report.check("router has external ip", bool(fixed_ips), f"external fixed ips {fixed_ips}")
            if fixed_ips:
                report.check(
                    "router ip in status",
                    status.networks.router.ip == fixed_ips[0]["ip_address"],
                    f"status {status.networks.router.ip} vs provider {fixed_ips[0]['ip_address']}",
                )
        if provider_config.networks.router is not None:
            report.check(
                "pre-existing router reused",
                status.networks.router.id == provider_config.networks.router.id,
                f"expected {provider_config.networks.router.id}, got {status.networks.router.id}",
            )

        # network
        network = self.lookup(NETWORKS, status.networks.id)
        if report.check("network exists", network is not None, f"network {status.networks.id}"):
            ids.network_id = network["id"]
        if provider_config.networks.id is not None:
            report.check(
                "pre-existing network reused",
                status.networks.id == provider_config.networks.id,
                f"expected {provider_config.networks.id}, got {status.networks.id}",
            )

        # nodes subnet
        subnet_status = status.nodes_subnet()
        if report.check("nodes subnet in status", subnet_status is not None, f"subnets {status.networks.subnets}"):
            subnet = self.lookup(SUBNETS, subnet_status.id)
            if report.check("subnet exists", subnet is not None, f"subnet {subnet_status.id}"):
                ids.subnet_id = subnet["id"]
                report.check(
                    "subnet cidr",
                    subnet["cidr"] == provider_config.networks.workers,
                    f"expected {provider_config.networks.workers}, got {subnet['cidr']}",
                )

        # security group
        group_status = status.nodes_security_group()
        if report.check("nodes security group in status", group_status is not None, f"{status.security_groups}"):
            group = self.lookup(SECURITY_GROUPS, group_status.id)
            if report.check("security group exists", group is not None, f"security group {group_status.id}"):
                ids.security_group_id = group["id"]
                report.check(
                    "security group name",
                    group["name"] == group_status.name,
                    f"expected {group_status.name}, got {group['name']}",
                )

        # keypair
        keypair = self.lookup(KEYPAIRS, status.node.key_name)
        if report.check("keypair exists", keypair is not None, f"keypair {status.node.key_name}"):
            ids.key_pair = keypair["name"]

        report.raise_if_failed()
        return ids

    def verify_deletion(self, ids: InfrastructureIdentifiers, provider_config: InfrastructureConfig):
        """
        Reconciler-created resources must be gone. A network or router the
        scenario supplied must survive: the reconciler does not own it.
        """
        report = VerificationReport("infrastructure deletion")

        if ids.key_pair:
            report.check("keypair deleted", self.absent_within_grace(KEYPAIRS, ids.key_pair), ids.key_pair)
        if ids.subnet_id:
            report.check("subnet deleted", self.absent_within_grace(SUBNETS, ids.subnet_id), ids.subnet_id)
        if ids.security_group_id:
            report.check(
                "security group deleted",
                self.absent_within_grace(SECURITY_GROUPS, ids.security_group_id),
                ids.security_group_id,
            )
        if ids.network_id:
            if provider_config.networks.id is None:
                report.check("network deleted", self.absent_within_grace(NETWORKS, ids.network_id), ids.network_id)
            else:
                report.check(
                    "pre-existing network kept", self.alive(NETWORKS, ids.network_id), ids.network_id
                )
        if ids.router_id:
            if provider_config.networks.router is None:
                report.check("router deleted", self.absent_within_grace(ROUTERS, ids.router_id), ids.router_id)
            else:
                report.check(
                    "pre-existing router kept", self.alive(ROUTERS, ids.router_id), ids.router_id
                )

        report.raise_if_failed()

    # Bastion

    def verify_bastion_creation(
        self, security_group_name: str, ssh_rule_description: str, instance_name: str
    ) -> Dict[str, Any]:
        report = VerificationReport("bastion creation")

        groups = self.provider.list(SECURITY_GROUPS, name=security_group_name)
        if report.check("security group exists", bool(groups), security_group_name):
            report.check(
                "security group description",
                groups[0].get("description") == security_group_name,
                f"description {groups[0].get('description')!r}",
            )

        rules = self.provider.list(SECURITY_GROUP_RULES, description=ssh_rule_description)
        report.check("ssh ingress rule exists", bool(rules), ssh_rule_description)

        servers = self.provider.list(SERVERS, name=instance_name)
        server: Dict[str, Any] = {}
        if report.check("bastion instance exists", bool(servers), instance_name):
            server = servers[0]
            private_ip, external_ip = server_ips(server)
            report.check("private ip assigned", private_ip is not None, f"{private_ip}")
            report.check("external ip assigned", external_ip is not None, f"{external_ip}")

        report.raise_if_failed()
        return server

    def verify_bastion_deletion(self, name: str, security_group_name: str):
        report = VerificationReport("bastion deletion")
        report.check("floating ip released", self.list_empty_within_grace(FLOATING_IPS, description=name), name)
        report.check(
            "security group deleted",
            self.list_empty_within_grace(SECURITY_GROUPS, name=security_group_name),
            security_group_name,
        )
        report.check("instance terminated", self.list_empty_within_grace(SERVERS, name=name), name)
        report.raise_if_failed()


def server_ips(server: Dict[str, Any]):
    """(private, external) addresses of a server, None where missing."""
    private_ip = external_ip = None
    for addresses in (server.get("addresses") or {}).values():
        for address in addresses:
            if address.get("type") == "floating" and external_ip is None:
                external_ip = address.get("addr")
            elif address.get("type") == "fixed" and private_ip is None:
                private_ip = address.get("addr")
    return private_ip, external_ip


# ============================================================================
# Reachability
# ============================================================================


def verify_port_open(ip: str, port: int, timeout: float):
    try:
        conn = socket.create_connection((ip, port), timeout=timeout)
    except OSError as e:
        raise VerificationMismatch(f"expected {ip}:{port} to accept connections: {e}") from e
    conn.close()
    logger.info("✓ %s:%s is open", ip, port)


def verify_port_closed(ip: str, port: int, timeout: float):
    try:
        conn = socket.create_connection((ip, port), timeout=timeout)
    except OSError:
        logger.info("✓ %s:%s is closed", ip, port)
        return
    conn.close()
    raise VerificationMismatch(f"expected {ip}:{port} to refuse connections")
