# simulator/provider_logic.py
"""
Provider semantics for the simulator.

Resources are created in BUILD and turn ACTIVE once `provisioning_delay`
has passed. A delete marks PENDING_DELETE; the row stays visible to get and
list until `deprovisioning_delay` has passed. That lag is the eventual
consistency the harness's verifier has to tolerate.

Lifecycle transitions are applied lazily at the start of every call.
"""

import hashlib
import ipaddress
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..metrics import METRICS
from .models import (
    FloatingIP as FloatingIPModel,
    KeyPair as KeyPairModel,
    Network as NetworkModel,
    Router as RouterModel,
    RouterInterface as RouterInterfaceModel,
    SecurityGroup as SGModel,
    SecurityGroupRule as SGRuleModel,
    Server as ServerModel,
    Subnet as SubnetModel,
)

BUILD = "BUILD"
ACTIVE = "ACTIVE"
PENDING_DELETE = "PENDING_DELETE"


class ResourceNotFound(LookupError):
    pass


class ResourceConflict(ValueError):
    pass


class InvalidRequest(ValueError):
    pass


@dataclass
class ProviderSettings:
    provisioning_delay: float = 0.0
    deprovisioning_delay: float = 0.0
    clock: Callable[[], float] = time.time


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def _set_status(row, status: str, settings: ProviderSettings):
    row.status = status
    row.status_changed_at = settings.clock()


# ============================================================================
# Lifecycle
# ============================================================================

LIFECYCLE_MODELS = {
    "networks": NetworkModel,
    "subnets": SubnetModel,
    "routers": RouterModel,
    "security-groups": SGModel,
    "keypairs": KeyPairModel,
    "floating-ips": FloatingIPModel,
    "servers": ServerModel,
}


def _key_column(kind: str, model):
    return model.name if kind == "keypairs" else model.id


def settle(db: Session, settings: ProviderSettings):
    """
    Apply every lifecycle transition that is due.

    Uses bulk statements: two sessions settling at once must not trip over
    rows the other one already moved or removed.
    """
    now = settings.clock()
    changed = 0
    for kind, model in LIFECYCLE_MODELS.items():
        changed += (
            db.query(model)
            .filter(model.status == BUILD, model.status_changed_at <= now - settings.provisioning_delay)
            .update({model.status: ACTIVE, model.status_changed_at: now}, synchronize_session=False)
        )
        due = (
            db.query(_key_column(kind, model))
            .filter(model.status == PENDING_DELETE, model.status_changed_at <= now - settings.deprovisioning_delay)
            .all()
        )
        for (key,) in due:
            _purge(db, kind, model, key)
            changed += 1
    db.commit()
    if changed:
        update_gauges(db)


def _purge(db: Session, kind: str, model, key: str):
    if kind == "security-groups":
        db.query(SGRuleModel).filter(SGRuleModel.security_group_id == key).delete(synchronize_session=False)
    elif kind == "servers":
        db.query(FloatingIPModel).filter(FloatingIPModel.server_id == key).update(
            {FloatingIPModel.server_id: None}, synchronize_session=False
        )
    db.query(model).filter(_key_column(kind, model) == key).delete(synchronize_session=False)


def update_gauges(db: Session):
    for kind, model in LIFECYCLE_MODELS.items():
        METRICS["provider_resources"].labels(kind=kind).set(
            db.query(model).filter(model.status != PENDING_DELETE).count()
        )


def _live(row) -> bool:
    return row is not None and row.status != PENDING_DELETE


def _get_row(db: Session, kind: str, resource_id: str):
    if kind == "security-group-rules":
        row = db.query(SGRuleModel).filter(SGRuleModel.id == resource_id).first()
    else:
        model = LIFECYCLE_MODELS.get(kind)
        if model is None:
            raise InvalidRequest(f"unknown resource kind {kind}")
        key = _key_column(kind, model)
        row = db.query(model).filter(key == resource_id).first()
    if row is None:
        raise ResourceNotFound(f"{kind} {resource_id} not found")
    return row


def _require_live(db: Session, kind: str, resource_id: str):
    row = _get_row(db, kind, resource_id)
    if not _live(row):
        raise ResourceNotFound(f"{kind} {resource_id} is being deleted")
    return row


# ============================================================================
# Addressing
# ============================================================================


def _used_addresses(db: Session) -> set:
    used = set()
    for router in db.query(RouterModel).all():
        used.update(ip["ip_address"] for ip in (router.external_fixed_ips or []))
    used.update(f.floating_ip_address for f in db.query(FloatingIPModel).all())
    used.update(s.fixed_ip for s in db.query(ServerModel).all() if s.fixed_ip)
    return used


def allocate_ip(db: Session, network_id: str) -> Dict[str, str]:
    """First free address in the allocation pools of the network's subnets."""
    used = _used_addresses(db)
    subnets = db.query(SubnetModel).filter(SubnetModel.network_id == network_id).all()
    for subnet in subnets:
        if not _live(subnet):
            continue
        used_here = used | {subnet.gateway_ip}
        pools = subnet.allocation_pools or []
        if pools:
            for pool in pools:
                start = ipaddress.ip_address(pool["start"])
                end = ipaddress.ip_address(pool["end"])
                address = start
                while address <= end:
                    if str(address) not in used_here:
                        return {"subnet_id": subnet.id, "ip_address": str(address)}
                    address += 1
        else:
            for address in ipaddress.ip_network(subnet.cidr).hosts():
                if str(address) not in used_here:
                    return {"subnet_id": subnet.id, "ip_address": str(address)}
    raise ResourceConflict(f"no free address on network {network_id}")


# ============================================================================
# Serialization
# ============================================================================


def serialize(db: Session, kind: str, row) -> Dict[str, Any]:
    if kind == "networks":
        subnets = db.query(SubnetModel).filter(SubnetModel.network_id == row.id).all()
        return {
            "id": row.id,
            "name": row.name,
            "external": bool(row.external),
            "status": row.status,
            "subnets": [s.id for s in subnets],
        }
    if kind == "subnets":
        return {
            "id": row.id,
            "name": row.name,
            "network_id": row.network_id,
            "cidr": row.cidr,
            "gateway_ip": row.gateway_ip,
            "allocation_pools": row.allocation_pools or [],
            "ip_version": row.ip_version,
            "status": row.status,
        }
    if kind == "routers":
        interfaces = db.query(RouterInterfaceModel).filter(RouterInterfaceModel.router_id == row.id).all()
        return {
            "id": row.id,
            "name": row.name,
            "admin_state_up": bool(row.admin_state_up),
            "status": row.status,
            "external_gateway_network_id": row.external_gateway_network_id,
            "external_fixed_ips": row.external_fixed_ips or [],
            "interfaces": [i.subnet_id for i in interfaces],
        }
    if kind == "security-groups":
        rules = db.query(SGRuleModel).filter(SGRuleModel.security_group_id == row.id).all()
        return {
            "id": row.id,
            "name": row.name,
            "description": row.description,
            "status": row.status,
            "rules": [serialize(db, "security-group-rules", r) for r in rules],
        }
    if kind == "security-group-rules":
        return {
            "id": row.id,
            "security_group_id": row.security_group_id,
            "direction": row.direction,
            "protocol": row.protocol,
            "port_range_min": row.port_range_min,
            "port_range_max": row.port_range_max,
            "remote_ip_prefix": row.remote_ip_prefix,
            "remote_group_id": row.remote_group_id,
            "description": row.description,
        }
    if kind == "keypairs":
        return {"name": row.name, "public_key": row.public_key, "fingerprint": row.fingerprint, "status": row.status}
    if kind == "floating-ips":
        return {
            "id": row.id,
            "floating_network_id": row.floating_network_id,
            "floating_ip_address": row.floating_ip_address,
            "description": row.description,
            "server_id": row.server_id,
            "status": row.status,
        }
    if kind == "servers":
        network = db.query(NetworkModel).filter(NetworkModel.id == row.network_id).first()
        addresses = []
        if row.fixed_ip:
            addresses.append({"addr": row.fixed_ip, "type": "fixed"})
        for fip in db.query(FloatingIPModel).filter(FloatingIPModel.server_id == row.id).all():
            addresses.append({"addr": fip.floating_ip_address, "type": "floating"})
        return {
            "id": row.id,
            "name": row.name,
            "status": row.status,
            "key_name": row.key_name,
            "security_group_ids": row.security_group_ids or [],
            "addresses": {network.name if network else row.network_id: addresses},
        }
    raise InvalidRequest(f"unknown resource kind {kind}")


# ============================================================================
# Create
# ============================================================================


def create_network_logic(db: Session, settings: ProviderSettings, name: str, external: bool = False):
    settle(db, settings)
    network = NetworkModel(id=_new_id("net"), name=name, external=external)
    _set_status(network, BUILD, settings)
    db.add(network)
    db.commit()
    db.refresh(network)
    return network


def create_subnet_logic(
    db: Session,
    settings: ProviderSettings,
    network_id: str,
    name: str,
    cidr: str,
    gateway_ip: Optional[str] = None,
    allocation_pools: Optional[List[Dict[str, str]]] = None,
    ip_version: int = 4,
):
    settle(db, settings)
    _require_live(db, "networks", network_id)
    try:
        network = ipaddress.ip_network(cidr)
    except ValueError as e:
        raise InvalidRequest(f"invalid cidr {cidr}: {e}") from e
    if gateway_ip is None:
        gateway_ip = str(next(network.hosts()))
    for pool in allocation_pools or []:
        if ipaddress.ip_address(pool["start"]) not in network or ipaddress.ip_address(pool["end"]) not in network:
            raise InvalidRequest(f"allocation pool {pool} outside {cidr}")
    subnet = SubnetModel(
        id=_new_id("subnet"),
        network_id=network_id,
        name=name,
        cidr=str(network),
        gateway_ip=gateway_ip,
        allocation_pools=list(allocation_pools or []),
        ip_version=ip_version,
    )
    _set_status(subnet, BUILD, settings)
    db.add(subnet)
    db.commit()
    db.refresh(subnet)
    return subnet


def create_router_logic(
    db: Session,
    settings: ProviderSettings,
    name: str,
    external_gateway_network_id: Optional[str] = None,
    admin_state_up: bool = True,
):
    settle(db, settings)
    fixed_ips = []
    if external_gateway_network_id:
        gateway = _require_live(db, "networks", external_gateway_network_id)
        if not gateway.external:
            raise InvalidRequest(f"network {external_gateway_network_id} is not external")
        fixed_ips.append(allocate_ip(db, external_gateway_network_id))
    router = RouterModel(
        id=_new_id("router"),
        name=name,
        admin_state_up=admin_state_up,
        external_gateway_network_id=external_gateway_network_id,
        external_fixed_ips=fixed_ips,
    )
    _set_status(router, BUILD, settings)
    db.add(router)
    db.commit()
    db.refresh(router)
    return router


def add_router_interface_logic(db: Session, settings: ProviderSettings, router_id: str, subnet_id: str):
    settle(db, settings)
    router = _require_live(db, "routers", router_id)
    _require_live(db, "subnets", subnet_id)
    attached = db.query(RouterInterfaceModel).filter(RouterInterfaceModel.subnet_id == subnet_id).first()
    if attached is not None:
        raise ResourceConflict(f"subnet {subnet_id} is already attached to router {attached.router_id}")
    db.add(RouterInterfaceModel(router_id=router_id, subnet_id=subnet_id))
    db.commit()
    return router


def remove_router_interface_logic(db: Session, settings: ProviderSettings, router_id: str, subnet_id: str):
    settle(db, settings)
    router = _get_row(db, "routers", router_id)
    interface = (
        db.query(RouterInterfaceModel)
        .filter(RouterInterfaceModel.router_id == router_id, RouterInterfaceModel.subnet_id == subnet_id)
        .first()
    )
    if interface is None:
        raise ResourceNotFound(f"router {router_id} has no interface on subnet {subnet_id}")
    db.delete(interface)
    db.commit()
    return router


def create_security_group_logic(db: Session, settings: ProviderSettings, name: str, description: str = ""):
    settle(db, settings)
    group = SGModel(id=_new_id("sg"), name=name, description=description)
    _set_status(group, ACTIVE, settings)
    db.add(group)
    db.commit()
    db.refresh(group)
    return group


def create_security_group_rule_logic(db: Session, settings: ProviderSettings, security_group_id: str, **fields: Any):
    settle(db, settings)
    _require_live(db, "security-groups", security_group_id)
    if fields.get("direction") not in ("ingress", "egress"):
        raise InvalidRequest(f"invalid direction {fields.get('direction')}")
    rule = SGRuleModel(id=_new_id("sgr"), security_group_id=security_group_id, **fields)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    return rule


def create_keypair_logic(db: Session, settings: ProviderSettings, name: str, public_key: str):
    settle(db, settings)
    existing = db.query(KeyPairModel).filter(KeyPairModel.name == name).first()
    if existing is not None:
        raise ResourceConflict(f"keypair {name} already exists")
    fingerprint = hashlib.md5(public_key.encode()).hexdigest()
    keypair = KeyPairModel(
        name=name,
        public_key=public_key,
        fingerprint=":".join(fingerprint[i : i + 2] for i in range(0, len(fingerprint), 2)),
    )
    _set_status(keypair, ACTIVE, settings)
    db.add(keypair)
    db.commit()
    db.refresh(keypair)
    return keypair


def create_server_logic(
    db: Session,
    settings: ProviderSettings,
    name: str,
    network_id: str,
    security_group_ids: Optional[List[str]] = None,
    user_data: str = "",
    key_name: Optional[str] = None,
):
    settle(db, settings)
    _require_live(db, "networks", network_id)
    for group_id in security_group_ids or []:
        _require_live(db, "security-groups", group_id)
    if key_name:
        _require_live(db, "keypairs", key_name)
    server = ServerModel(
        id=_new_id("server"),
        name=name,
        network_id=network_id,
        fixed_ip=allocate_ip(db, network_id)["ip_address"],
        security_group_ids=list(security_group_ids or []),
        key_name=key_name,
        user_data=user_data,
    )
    _set_status(server, BUILD, settings)
    db.add(server)
    db.commit()
    db.refresh(server)
    return server


def create_floating_ip_logic(
    db: Session,
    settings: ProviderSettings,
    floating_network_id: str,
    description: str = "",
    server_id: Optional[str] = None,
):
    settle(db, settings)
    network = _require_live(db, "networks", floating_network_id)
    if not network.external:
        raise InvalidRequest(f"network {floating_network_id} is not external")
    if server_id:
        _require_live(db, "servers", server_id)
    fip = FloatingIPModel(
        id=_new_id("fip"),
        floating_network_id=floating_network_id,
        floating_ip_address=allocate_ip(db, floating_network_id)["ip_address"],
        description=description,
        server_id=server_id,
    )
    _set_status(fip, BUILD, settings)
    db.add(fip)
    db.commit()
    db.refresh(fip)
    return fip


# ============================================================================
# Read / delete
# ============================================================================

LIST_FILTERS = {
    "networks": ("name", "external"),
    "subnets": ("name", "network_id"),
    "routers": ("name",),
    "security-groups": ("name",),
    "security-group-rules": ("description", "security_group_id"),
    "keypairs": ("name",),
    "floating-ips": ("description", "floating_network_id"),
    "servers": ("name",),
}


def get_logic(db: Session, settings: ProviderSettings, kind: str, resource_id: str):
    settle(db, settings)
    return _get_row(db, kind, resource_id)


def list_logic(db: Session, settings: ProviderSettings, kind: str, filters: Dict[str, Any]):
    settle(db, settings)
    if kind not in LIST_FILTERS:
        raise InvalidRequest(f"unknown resource kind {kind}")
    model = SGRuleModel if kind == "security-group-rules" else LIFECYCLE_MODELS[kind]
    query = db.query(model)
    for field in LIST_FILTERS[kind]:
        value = filters.get(field)
        if value is not None:
            query = query.filter(getattr(model, field) == value)
    return query.all()


def _in_use(db: Session, kind: str, row) -> Optional[str]:
    if kind == "networks":
        subnets = [s for s in db.query(SubnetModel).filter(SubnetModel.network_id == row.id).all() if _live(s)]
        if subnets:
            return f"network {row.id} still has subnets {[s.id for s in subnets]}"
        servers = [s for s in db.query(ServerModel).filter(ServerModel.network_id == row.id).all() if _live(s)]
        if servers:
            return f"network {row.id} still has servers {[s.id for s in servers]}"
    elif kind == "subnets":
        interface = db.query(RouterInterfaceModel).filter(RouterInterfaceModel.subnet_id == row.id).first()
        if interface is not None:
            return f"subnet {row.id} is in use by router {interface.router_id}"
    elif kind == "routers":
        interfaces = db.query(RouterInterfaceModel).filter(RouterInterfaceModel.router_id == row.id).all()
        if interfaces:
            return f"router {row.id} still has interfaces on {[i.subnet_id for i in interfaces]}"
    elif kind == "security-groups":
        for server in db.query(ServerModel).all():
            if _live(server) and row.id in (server.security_group_ids or []):
                return f"security group {row.id} is in use by server {server.id}"
        for rule in db.query(SGRuleModel).filter(SGRuleModel.remote_group_id == row.id).all():
            if rule.security_group_id == row.id:
                continue
            owner = db.query(SGModel).filter(SGModel.id == rule.security_group_id).first()
            if _live(owner):
                return f"security group {row.id} is referenced by rule {rule.id}"
    return None


def delete_logic(db: Session, settings: ProviderSettings, kind: str, resource_id: str):
    settle(db, settings)
    row = _get_row(db, kind, resource_id)
    if kind == "security-group-rules":
        db.delete(row)
        db.commit()
        return
    if not _live(row):
        return
    reason = _in_use(db, kind, row)
    if reason:
        raise ResourceConflict(reason)
    if kind == "floating-ips":
        row.server_id = None
    _set_status(row, PENDING_DELETE, settings)
    db.commit()
    update_gauges(db)
    settle(db, settings)
