"""
Typed views of the provider-specific payloads carried by declarative objects.

The harness builds InfrastructureConfig / CloudProfileConfig and decodes
InfrastructureStatus; everything else in an object stays a plain dict.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

API_VERSION = "openstack.provider.convergence.dev/v1alpha1"


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RouterRef(StrictModel):
    id: str


class NetworksConfig(StrictModel):
    id: Optional[str] = None
    router: Optional[RouterRef] = None
    workers: str


class InfrastructureConfig(StrictModel):
    api_version: str = API_VERSION
    kind: str = "InfrastructureConfig"
    floating_pool_name: str
    networks: NetworksConfig


class KeyStoneURL(StrictModel):
    region: str
    url: str


class CloudProfileConfig(StrictModel):
    api_version: str = API_VERSION
    kind: str = "CloudProfileConfig"
    key_stone_urls: List[KeyStoneURL] = Field(default_factory=list)


class ShootInfrastructureConfig(StrictModel):
    """Infrastructure settings the bastion reconciler reads from the cluster's shoot."""

    api_version: str = API_VERSION
    kind: str = "InfrastructureConfig"
    floating_pool_name: str


# ============================================================================
# Status
# ============================================================================


class RouterStatus(StrictModel):
    id: str
    ip: str = ""


class SubnetStatus(StrictModel):
    id: str
    purpose: str


class FloatingPoolStatus(StrictModel):
    id: str
    name: str


class NetworkStatus(StrictModel):
    id: str
    name: str
    router: RouterStatus
    subnets: List[SubnetStatus] = Field(default_factory=list)
    floating_pool: FloatingPoolStatus


class SecurityGroupStatus(StrictModel):
    id: str
    name: str
    purpose: str


class NodeStatus(StrictModel):
    key_name: str


class InfrastructureStatus(StrictModel):
    api_version: str = API_VERSION
    kind: str = "InfrastructureStatus"
    networks: NetworkStatus
    security_groups: List[SecurityGroupStatus] = Field(default_factory=list)
    node: NodeStatus

    def nodes_subnet(self) -> Optional[SubnetStatus]:
        for subnet in self.networks.subnets:
            if subnet.purpose == "nodes":
                return subnet
        return None

    def nodes_security_group(self) -> Optional[SecurityGroupStatus]:
        for group in self.security_groups:
            if group.purpose == "nodes":
                return group
        return None


# ============================================================================
# Bastion
# ============================================================================


class BastionOptions(StrictModel):
    """Provider-side names derived from a bastion object's name."""

    instance_name: str
    security_group: str
    ssh_rule_description: str
    egress_rule_description: str

    @classmethod
    def for_bastion(cls, name: str) -> "BastionOptions":
        return cls(
            instance_name=name,
            security_group=f"{name}-sg",
            ssh_rule_description=f"SSH access for Bastion {name}",
            egress_rule_description=f"Allow SSH to workers for Bastion {name}",
        )
