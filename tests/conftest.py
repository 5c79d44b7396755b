import threading

import pytest
from fastapi.testclient import TestClient

from convergence_harness.cleanup import CleanupStack
from convergence_harness.clients.provider_client import ProviderClient
from convergence_harness.clients.store_client import ObjectStoreClient
from convergence_harness.config import HarnessConfig, Timeouts
from convergence_harness.poller import Poller
from convergence_harness.simulator.listener import PortListener, free_port
from convergence_harness.simulator.local import FLOATING_POOL_NAME, seed_floating_pool
from convergence_harness.simulator.models import make_session_factory
from convergence_harness.simulator.provider_logic import ProviderSettings
from convergence_harness.simulator.reconciler import ReferenceReconciler
from convergence_harness.simulator.rest_api_server import create_app


class FakeClock:
    """Manually advanced clock; `sleep` advances it instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings():
    return ProviderSettings()


@pytest.fixture
def session_factory(tmp_path):
    return make_session_factory(f"sqlite:///{tmp_path / 'simulator.db'}")


@pytest.fixture
def app(session_factory, settings):
    return create_app(session_factory, settings)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def store(client):
    return ObjectStoreClient(http=client)


@pytest.fixture
def provider(client):
    return ProviderClient(http=client)


@pytest.fixture
def floating_pool_id(provider):
    return seed_floating_pool(provider)


@pytest.fixture
def ssh_listener():
    with PortListener() as listener:
        yield listener


@pytest.fixture
def config(ssh_listener):
    return HarnessConfig(
        store_url="http://testserver",
        provider_url="http://testserver",
        auth_url="http://testserver/identity/v3",
        domain_name="default",
        tenant_name="harness",
        user_name="harness",
        password="secret",
        region="local-1",
        floating_pool_name=FLOATING_POOL_NAME,
        timeouts=Timeouts.fast(interval=0.02, ceiling=20.0),
        consistency_grace=5.0,
        grace_poll_interval=0.05,
        bastion_ssh_port=ssh_listener.port,
        bastion_closed_port=free_port(),
        open_dial_timeout=2.0,
        closed_dial_timeout=0.5,
        bastion_settle_seconds=0.0,
    )


@pytest.fixture
def poller(config):
    return Poller(max_fetch_errors=config.max_fetch_errors)


@pytest.fixture
def cleanup():
    stack = CleanupStack()
    yield stack
    stack.run_all()


@pytest.fixture
def infrastructure_spec(config):
    """Builds an Infrastructure spec for `namespace`; keyword args go into the networks config."""

    def build(namespace, floating_pool_name=None, **networks):
        networks.setdefault("workers", config.workers_cidr)
        return {
            "type": "openstack",
            "region": config.region,
            "secret_ref": {"name": "cloudprovider", "namespace": namespace},
            "ssh_public_key": "ssh-rsa AAAA harness@example.com",
            "provider_config": {
                "api_version": "openstack.provider.convergence.dev/v1alpha1",
                "kind": "InfrastructureConfig",
                "floating_pool_name": floating_pool_name or config.floating_pool_name,
                "networks": networks,
            },
        }

    return build


@pytest.fixture
def reconciler(app):
    """
    Reference reconciler running in its own thread with its own HTTP client.

    Request it before `cleanup`: fallback deletions need it still running.
    """
    http = TestClient(app)
    engine = ReferenceReconciler(ObjectStoreClient(http=http), ProviderClient(http=http), interval_seconds=0.02)
    thread = threading.Thread(target=engine.run, daemon=True)
    thread.start()
    yield engine
    engine.stop()
    thread.join(timeout=5)
