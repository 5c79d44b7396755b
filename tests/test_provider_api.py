import pytest

from convergence_harness.clients.provider_client import (
    FLOATING_IPS,
    KEYPAIRS,
    NETWORKS,
    ROUTERS,
    SECURITY_GROUP_RULES,
    SECURITY_GROUPS,
    SERVERS,
    SUBNETS,
)
from convergence_harness.errors import AlreadyExistsError, ClientError, ConflictError, NotFoundError
from convergence_harness.simulator.local import FLOATING_POOL_NAME, seed_floating_pool


def test_seed_floating_pool_is_idempotent(provider, floating_pool_id):
    assert seed_floating_pool(provider) == floating_pool_id
    pools = provider.list(NETWORKS, name=FLOATING_POOL_NAME, external=True)
    assert [p["id"] for p in pools] == [floating_pool_id]


def test_external_filter(provider, floating_pool_id):
    provider.create_network("private")

    assert [n["name"] for n in provider.list(NETWORKS, external=False)] == ["private"]
    assert [n["id"] for n in provider.list(NETWORKS, external=True)] == [floating_pool_id]


def test_network_becomes_active(provider):
    network = provider.create_network("net-1")

    assert provider.get(NETWORKS, network["id"])["status"] == "ACTIVE"


def test_subnet_validation(provider):
    network = provider.create_network("net-1")

    with pytest.raises(ClientError) as exc_info:
        provider.create_subnet("bad", network["id"], "not-a-cidr")
    assert exc_info.value.status_code == 400

    with pytest.raises(ClientError):
        provider.create_subnet("bad", network["id"], "10.0.0.0/24", allocation_pools=[{"start": "10.1.0.2", "end": "10.1.0.9"}])

    with pytest.raises(NotFoundError):
        provider.create_subnet("orphan", "net-missing", "10.0.0.0/24")


def test_subnet_default_gateway(provider):
    network = provider.create_network("net-1")

    subnet = provider.create_subnet("sub-1", network["id"], "10.250.0.0/16")

    assert subnet["gateway_ip"] == "10.250.0.1"
    assert provider.get(NETWORKS, network["id"])["subnets"] == [subnet["id"]]


def test_router_gets_gateway_address_from_pool(provider, floating_pool_id):
    first = provider.create_router("r1", floating_pool_id)
    second = provider.create_router("r2", floating_pool_id)

    assert first["external_fixed_ips"][0]["ip_address"] == "127.0.0.10"
    assert second["external_fixed_ips"][0]["ip_address"] == "127.0.0.11"


def test_router_gateway_must_be_external(provider):
    network = provider.create_network("private")

    with pytest.raises(ClientError) as exc_info:
        provider.create_router("r1", network["id"])
    assert exc_info.value.status_code == 400


def test_router_interfaces(provider, floating_pool_id):
    network = provider.create_network("net-1")
    subnet = provider.create_subnet("sub-1", network["id"], "10.0.0.0/24")
    router = provider.create_router("r1", floating_pool_id)

    attached = provider.add_router_interface(router["id"], subnet["id"])
    assert attached["interfaces"] == [subnet["id"]]

    with pytest.raises(ConflictError):
        provider.add_router_interface(router["id"], subnet["id"])
    with pytest.raises(ConflictError):
        provider.delete(SUBNETS, subnet["id"])
    with pytest.raises(ConflictError):
        provider.delete(ROUTERS, router["id"])

    assert provider.remove_router_interface(router["id"], subnet["id"])["interfaces"] == []
    with pytest.raises(NotFoundError):
        provider.remove_router_interface(router["id"], subnet["id"])

    provider.delete(ROUTERS, router["id"])
    assert not provider.exists(ROUTERS, router["id"])


def test_network_with_subnets_cannot_be_deleted(provider):
    network = provider.create_network("net-1")
    subnet = provider.create_subnet("sub-1", network["id"], "10.0.0.0/24")

    with pytest.raises(ConflictError):
        provider.delete(NETWORKS, network["id"])

    provider.delete(SUBNETS, subnet["id"])
    provider.delete(NETWORKS, network["id"])
    assert not provider.exists(NETWORKS, network["id"])


def test_security_group_rules(provider):
    group = provider.create_security_group("sg-1", "Cluster Nodes")
    rule = provider.create_security_group_rule(
        group["id"], direction="ingress", port_range_min=22, port_range_max=22, description="ssh"
    )

    fetched = provider.get(SECURITY_GROUPS, group["id"])
    assert fetched["status"] == "ACTIVE"
    assert [r["id"] for r in fetched["rules"]] == [rule["id"]]
    assert provider.list(SECURITY_GROUP_RULES, description="ssh")[0]["port_range_min"] == 22

    with pytest.raises(ClientError):
        provider.create_security_group_rule(group["id"], direction="sideways")

    provider.delete(SECURITY_GROUP_RULES, rule["id"])
    assert provider.get(SECURITY_GROUPS, group["id"])["rules"] == []


def test_security_group_referenced_by_live_rule_is_in_use(provider):
    target = provider.create_security_group("workers")
    other = provider.create_security_group("bastion")
    provider.create_security_group_rule(other["id"], direction="egress", remote_group_id=target["id"])

    with pytest.raises(ConflictError):
        provider.delete(SECURITY_GROUPS, target["id"])

    provider.delete(SECURITY_GROUPS, other["id"])
    provider.delete(SECURITY_GROUPS, target["id"])
    assert provider.list(SECURITY_GROUPS) == []


def test_self_referencing_rule_does_not_block_delete(provider):
    group = provider.create_security_group("nodes")
    provider.create_security_group_rule(group["id"], protocol=None, remote_group_id=group["id"])

    provider.delete(SECURITY_GROUPS, group["id"])

    assert not provider.exists(SECURITY_GROUPS, group["id"])
    assert provider.list(SECURITY_GROUP_RULES) == []


def test_keypairs_are_keyed_by_name(provider):
    keypair = provider.create_keypair("ns-ssh-publickey", "ssh-rsa AAAA test")

    assert len(keypair["fingerprint"].split(":")) == 16
    assert provider.get(KEYPAIRS, "ns-ssh-publickey")["public_key"] == "ssh-rsa AAAA test"
    with pytest.raises(AlreadyExistsError):
        provider.create_keypair("ns-ssh-publickey", "ssh-rsa BBBB test")

    provider.delete(KEYPAIRS, "ns-ssh-publickey")
    assert not provider.exists(KEYPAIRS, "ns-ssh-publickey")


def test_server_with_floating_ip(provider, floating_pool_id):
    network = provider.create_network("shoot")
    provider.create_subnet(
        "shoot-subnet", network["id"], "10.180.0.0/16", "10.180.0.1", [{"start": "10.180.0.2", "end": "10.180.0.9"}]
    )
    group = provider.create_security_group("bastion-sg")
    server = provider.create_server("bastion", network["id"], [group["id"]], user_data="IyE=")

    fip = provider.create_floating_ip(floating_pool_id, "bastion", server["id"])

    addresses = provider.get(SERVERS, server["id"])["addresses"]["shoot"]
    assert {"addr": "10.180.0.2", "type": "fixed"} in addresses
    assert {"addr": fip["floating_ip_address"], "type": "floating"} in addresses
    assert provider.list(FLOATING_IPS, description="bastion")[0]["server_id"] == server["id"]

    with pytest.raises(ConflictError):
        provider.delete(SECURITY_GROUPS, group["id"])
    with pytest.raises(ConflictError):
        provider.delete(NETWORKS, network["id"])


def test_floating_ip_needs_external_network(provider):
    network = provider.create_network("private")

    with pytest.raises(ClientError):
        provider.create_floating_ip(network["id"])


def test_deleting_floating_ip_detaches_it(provider, floating_pool_id):
    network = provider.create_network("shoot")
    provider.create_subnet("shoot-subnet", network["id"], "10.180.0.0/16")
    server = provider.create_server("bastion", network["id"])
    fip = provider.create_floating_ip(floating_pool_id, "bastion", server["id"])

    provider.delete(FLOATING_IPS, fip["id"])

    assert provider.get(SERVERS, server["id"])["addresses"]["shoot"] == [{"addr": "10.180.0.2", "type": "fixed"}]


def test_pool_exhaustion_conflicts(provider):
    pool = provider.create_network("tiny", external=True)
    provider.create_subnet("tiny-subnet", pool["id"], "192.0.2.0/30", "192.0.2.1", [{"start": "192.0.2.2", "end": "192.0.2.2"}])
    provider.create_floating_ip(pool["id"])

    with pytest.raises(ConflictError):
        provider.create_floating_ip(pool["id"])


def test_unknown_kind(client):
    assert client.get("/provider/volumes").status_code == 400
    assert client.get("/provider/volumes/vol-1").status_code == 400


def test_get_missing_resource(provider):
    with pytest.raises(NotFoundError):
        provider.get(ROUTERS, "router-missing")
    with pytest.raises(NotFoundError):
        provider.delete(ROUTERS, "router-missing")


def test_find_by_name(provider):
    provider.create_security_group("a")
    second = provider.create_security_group("b")

    assert provider.find_by_name(SECURITY_GROUPS, "b")["id"] == second["id"]
    assert provider.find_by_name(SECURITY_GROUPS, "c") is None
