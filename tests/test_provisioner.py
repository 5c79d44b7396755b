import pytest

from convergence_harness.cleanup import CleanupStack
from convergence_harness.clients.provider_client import NETWORKS, ROUTERS, SECURITY_GROUPS, SUBNETS
from convergence_harness.errors import SetupError
from convergence_harness.provisioner import ExternalResourceProvisioner
from convergence_harness.simulator.local import FLOATING_POOL_NAME


@pytest.fixture
def stack():
    return CleanupStack()


@pytest.fixture
def provisioner(provider, stack):
    return ExternalResourceProvisioner(provider, stack)


def test_find_external_network(provisioner, floating_pool_id):
    assert provisioner.find_external_network(FLOATING_POOL_NAME) == floating_pool_id


def test_find_external_network_requires_exactly_one(provisioner, provider):
    with pytest.raises(SetupError, match="found 0"):
        provisioner.find_external_network("nope")

    provider.create_network("dup", external=True)
    provider.create_network("dup", external=True)
    with pytest.raises(SetupError, match="found 2"):
        provisioner.find_external_network("dup")


def test_network_with_subnet_is_torn_down(provisioner, provider, stack):
    network_id = provisioner.create_network("shoot")
    subnet_id = provisioner.create_subnet(
        "shoot-subnet", network_id, "10.180.0.0/16", "10.180.0.1", {"start": "10.180.0.2", "end": "10.180.255.254"}
    )
    assert provider.get(SUBNETS, subnet_id)["allocation_pools"] == [{"start": "10.180.0.2", "end": "10.180.255.254"}]

    assert stack.run_all() == []
    assert not provider.exists(NETWORKS, network_id)
    assert not provider.exists(SUBNETS, subnet_id)


def test_router_with_attached_subnet_is_detached_before_delete(provisioner, provider, stack, floating_pool_id):
    network_id = provisioner.create_network("shoot")
    subnet_id = provisioner.create_subnet("shoot-subnet", network_id, "10.180.0.0/16")
    router_id = provisioner.create_router("shoot-router", floating_pool_id, subnet_id)
    assert provider.get(ROUTERS, router_id)["interfaces"] == [subnet_id]

    assert stack.run_all() == []
    assert not provider.exists(ROUTERS, router_id)
    assert not provider.exists(NETWORKS, network_id)


def test_failed_attach_still_cleans_up_router(provisioner, provider, stack, floating_pool_id):
    with pytest.raises(SetupError):
        provisioner.create_router("router", floating_pool_id, "subnet-missing")

    routers = provider.list(ROUTERS, name="router")
    assert len(routers) == 1
    assert stack.run_all() == []
    assert provider.list(ROUTERS, name="router") == []


def test_create_failures_are_setup_errors(provisioner):
    with pytest.raises(SetupError) as exc_info:
        provisioner.create_subnet("orphan", "net-missing", "10.0.0.0/24")
    assert exc_info.value.cause is not None

    with pytest.raises(SetupError):
        provisioner.create_router("router", "net-missing")


def test_security_group_description_defaults_to_name(provisioner, provider, stack):
    group_id = provisioner.create_security_group("bastion-shoot")

    assert provider.get(SECURITY_GROUPS, group_id)["description"] == "bastion-shoot"
    stack.run_all()
    assert not provider.exists(SECURITY_GROUPS, group_id)


def test_release_skips_teardown(provisioner, provider, stack):
    network_id = provisioner.create_network("kept")

    assert provisioner.release(network_id) is True
    assert provisioner.release(network_id) is False
    stack.run_all()

    assert provider.exists(NETWORKS, network_id)


def test_teardown_tolerates_missing_resources(provisioner, stack):
    provisioner.teardown_router("router-missing", "subnet-missing")
    provisioner.teardown_security_group("sg-missing")
    provisioner.teardown_network("net-missing")
