"""
Local environment: simulator API under uvicorn, the reference reconciler and
an SSH stand-in, all in background threads of the current process.
"""

import logging
import os
import shutil
import tempfile
import threading
import time
from typing import Optional

import uvicorn

from ..clients.provider_client import NETWORKS, ProviderClient
from ..clients.store_client import ObjectStoreClient
from ..config import HarnessConfig, Timeouts
from ..errors import SetupError
from .listener import PortListener, free_port
from .models import make_session_factory
from .provider_logic import ProviderSettings
from .reconciler import ReferenceReconciler
from .rest_api_server import create_app

logger = logging.getLogger("convergence_harness.simulator.local")

FLOATING_POOL_NAME = "FloatingIP-external"
FLOATING_POOL_CIDR = "127.0.0.0/24"
FLOATING_POOL_GATEWAY = "127.0.0.1"
FLOATING_POOL_RANGE = {"start": "127.0.0.10", "end": "127.0.0.250"}


def seed_floating_pool(provider: ProviderClient, name: str = FLOATING_POOL_NAME) -> str:
    """
    Create the external network floating IPs and router gateways come from.
    Its addresses are loopback, so a local listener is reachable on them.
    """
    existing = provider.list(NETWORKS, name=name, external=True)
    if existing:
        return existing[0]["id"]
    network = provider.create_network(name, external=True)
    provider.create_subnet(
        f"{name}-subnet", network["id"], FLOATING_POOL_CIDR, FLOATING_POOL_GATEWAY, [FLOATING_POOL_RANGE]
    )
    return network["id"]


def local_config(base_url: str, ssh_port: int, closed_port: int) -> HarnessConfig:
    return HarnessConfig(
        store_url=base_url,
        provider_url=base_url,
        auth_url=f"{base_url}/identity/v3",
        domain_name="default",
        tenant_name="harness",
        user_name="harness",
        password="harness",
        region="local-1",
        floating_pool_name=FLOATING_POOL_NAME,
        timeouts=Timeouts.fast(interval=0.2, ceiling=60.0),
        consistency_grace=10.0,
        grace_poll_interval=0.2,
        bastion_ssh_port=ssh_port,
        bastion_closed_port=closed_port,
        open_dial_timeout=5.0,
        closed_dial_timeout=1.0,
        bastion_settle_seconds=0.5,
    )


class LocalEnvironment:
    def __init__(
        self,
        settings: Optional[ProviderSettings] = None,
        reconcile_interval: float = 0.2,
        host: str = "127.0.0.1",
    ):
        self.settings = settings or ProviderSettings(provisioning_delay=0.5, deprovisioning_delay=1.0)
        self.reconcile_interval = reconcile_interval
        self.host = host
        self.port = free_port(host)
        self.base_url = f"http://{host}:{self.port}"
        self._workdir: Optional[str] = None
        self._server: Optional[uvicorn.Server] = None
        self._threads = []
        self.reconciler: Optional[ReferenceReconciler] = None
        self.listener = PortListener()
        self.config: Optional[HarnessConfig] = None

    def start(self, startup_timeout: float = 10.0) -> HarnessConfig:
        self._workdir = tempfile.mkdtemp(prefix="convergence-harness-")
        session_factory = make_session_factory(f"sqlite:///{os.path.join(self._workdir, 'simulator.db')}")
        app = create_app(session_factory, self.settings)

        self._server = uvicorn.Server(uvicorn.Config(app, host=self.host, port=self.port, log_level="warning"))
        self._spawn("simulator-api", self._server.run)
        deadline = time.monotonic() + startup_timeout
        while not self._server.started:
            if time.monotonic() > deadline:
                raise SetupError(f"simulator API did not start on {self.base_url}")
            time.sleep(0.05)
        logger.info("Simulator API listening on %s", self.base_url)

        provider = ProviderClient(self.base_url)
        try:
            seed_floating_pool(provider)
        finally:
            provider.close()

        self.reconciler = ReferenceReconciler(
            ObjectStoreClient(self.base_url), ProviderClient(self.base_url), self.reconcile_interval
        )
        self._spawn("reference-reconciler", self.reconciler.run)

        self.listener.start()
        self.config = local_config(self.base_url, self.listener.port, free_port())
        return self.config

    def _spawn(self, name: str, target):
        thread = threading.Thread(target=target, name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def stop(self):
        if self.reconciler is not None:
            self.reconciler.stop()
            self.reconciler.store.close()
            self.reconciler.provider.close()
        if self._server is not None:
            self._server.should_exit = True
        for thread in self._threads:
            thread.join(timeout=5)
        self.listener.stop()
        if self._workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)

    def __enter__(self) -> "LocalEnvironment":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
        return False
