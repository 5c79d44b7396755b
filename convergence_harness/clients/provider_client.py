"""
Provider API client.

Every resource kind supports create / get / list / delete. get raises
NotFoundError when the provider no longer knows the resource, which is what
existence checks key off.
"""

from typing import Any, Dict, List, Optional

import httpx

from ..errors import NotFoundError
from .base import ApiClient

NETWORKS = "networks"
SUBNETS = "subnets"
ROUTERS = "routers"
SECURITY_GROUPS = "security-groups"
SECURITY_GROUP_RULES = "security-group-rules"
KEYPAIRS = "keypairs"
FLOATING_IPS = "floating-ips"
SERVERS = "servers"

KINDS = (NETWORKS, SUBNETS, ROUTERS, SECURITY_GROUPS, SECURITY_GROUP_RULES, KEYPAIRS, FLOATING_IPS, SERVERS)


class ProviderClient(ApiClient):
    def __init__(self, base_url: str = "", http: Optional[httpx.Client] = None, timeout: float = 30.0):
        super().__init__(base_url=base_url, http=http, prefix="/provider", timeout=timeout)

    # Generic CRUD

    def create(self, kind: str, **opts: Any) -> Dict[str, Any]:
        return self.request("POST", f"/{kind}", json=opts)

    def get(self, kind: str, resource_id: str) -> Dict[str, Any]:
        return self.request("GET", f"/{kind}/{resource_id}")

    def list(self, kind: str, **filters: Any) -> List[Dict[str, Any]]:
        params = {k: v for k, v in filters.items() if v is not None}
        return self.request("GET", f"/{kind}", params=params or None)

    def delete(self, kind: str, resource_id: str):
        self.request("DELETE", f"/{kind}/{resource_id}")

    def exists(self, kind: str, resource_id: str) -> bool:
        try:
            self.get(kind, resource_id)
            return True
        except NotFoundError:
            return False

    # Networking

    def create_network(self, name: str, external: bool = False) -> Dict[str, Any]:
        return self.create(NETWORKS, name=name, external=external)

    def create_subnet(
        self,
        name: str,
        network_id: str,
        cidr: str,
        gateway_ip: Optional[str] = None,
        allocation_pools: Optional[List[Dict[str, str]]] = None,
        ip_version: int = 4,
    ) -> Dict[str, Any]:
        return self.create(
            SUBNETS,
            name=name,
            network_id=network_id,
            cidr=cidr,
            gateway_ip=gateway_ip,
            allocation_pools=allocation_pools or [],
            ip_version=ip_version,
        )

    def create_router(self, name: str, external_network_id: Optional[str] = None) -> Dict[str, Any]:
        return self.create(
            ROUTERS,
            name=name,
            admin_state_up=True,
            external_gateway_network_id=external_network_id,
        )

    def add_router_interface(self, router_id: str, subnet_id: str) -> Dict[str, Any]:
        return self.request("PUT", f"/{ROUTERS}/{router_id}/add_router_interface", json={"subnet_id": subnet_id})

    def remove_router_interface(self, router_id: str, subnet_id: str) -> Dict[str, Any]:
        return self.request("PUT", f"/{ROUTERS}/{router_id}/remove_router_interface", json={"subnet_id": subnet_id})

    def create_security_group(self, name: str, description: str = "") -> Dict[str, Any]:
        return self.create(SECURITY_GROUPS, name=name, description=description)

    def create_security_group_rule(
        self,
        security_group_id: str,
        direction: str = "ingress",
        protocol: str = "tcp",
        port_range_min: Optional[int] = None,
        port_range_max: Optional[int] = None,
        remote_ip_prefix: Optional[str] = None,
        remote_group_id: Optional[str] = None,
        description: str = "",
    ) -> Dict[str, Any]:
        return self.create(
            SECURITY_GROUP_RULES,
            security_group_id=security_group_id,
            direction=direction,
            protocol=protocol,
            port_range_min=port_range_min,
            port_range_max=port_range_max,
            remote_ip_prefix=remote_ip_prefix,
            remote_group_id=remote_group_id,
            description=description,
        )

    # Compute

    def create_keypair(self, name: str, public_key: str) -> Dict[str, Any]:
        return self.create(KEYPAIRS, name=name, public_key=public_key)

    def create_server(
        self,
        name: str,
        network_id: str,
        security_group_ids: Optional[List[str]] = None,
        user_data: str = "",
        key_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.create(
            SERVERS,
            name=name,
            network_id=network_id,
            security_group_ids=security_group_ids or [],
            user_data=user_data,
            key_name=key_name,
        )

    def create_floating_ip(
        self, floating_network_id: str, description: str = "", server_id: Optional[str] = None
    ) -> Dict[str, Any]:
        return self.create(
            FLOATING_IPS,
            floating_network_id=floating_network_id,
            description=description,
            server_id=server_id,
        )

    def find_by_name(self, kind: str, name: str, **filters: Any) -> Optional[Dict[str, Any]]:
        """Return the first live resource with this name, or None."""
        matches = [r for r in self.list(kind, name=name, **filters) if r.get("status") != "PENDING_DELETE"]
        return matches[0] if matches else None
