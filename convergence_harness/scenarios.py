#!/usr/bin/env python3
"""
Scenarios

End-to-end runs composed from the provisioner, driver, poller and verifier.

Infrastructure matrix (pre-existing inputs x reconciliation strategy):
- new network: flow, migration from legacy, legacy
- existing router: flow, legacy
- existing network: flow, legacy
- existing network and router: flow with state recovery, legacy

Bastion: shoot network 10.180.0.0/16 behind a router, bastion on top,
SSH port reachable, an unrelated port closed.

Every scenario owns its cleanup stack; it is unwound whatever happens.
"""

import logging
import random
import string
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .cleanup import CleanupStack
from .clients.provider_client import ProviderClient
from .clients.store_client import ObjectStoreClient
from .config import HarnessConfig
from .diagnostics import ScenarioResult, Stopwatch, step
from .driver import PROVIDER_TYPE, SECRET_NAME, USE_FLOW_ANNOTATION, FlowUsage, ReconciliationDriver
from .errors import VerificationMismatch
from .flow_state import empty_flow_state
from .metrics import METRICS
from .poller import Poller
from .provisioner import ExternalResourceProvisioner
from .schemas import (
    BastionOptions,
    CloudProfileConfig,
    InfrastructureConfig,
    InfrastructureStatus,
    KeyStoneURL,
    NetworksConfig,
    RouterRef,
    ShootInfrastructureConfig,
)
from .verifier import OutcomeVerifier, verify_port_closed, verify_port_open

logger = logging.getLogger("convergence_harness.scenarios")

NAME_CHARSET = string.digits + string.ascii_lowercase
INFRA_NAMESPACE_PREFIX = "openstack--infra-it--"
BASTION_NAME_PREFIX = "openstack-it-bastion-"

BASTION_SUBNET_CIDR = "10.180.0.0/16"
BASTION_SUBNET_GATEWAY = "10.180.0.1"
BASTION_ALLOCATION_POOL = {"start": "10.180.0.2", "end": "10.180.255.254"}

SSH_PUBLIC_KEY = (
    "ssh-rsa AAAAB3NzaC1yc2EAAAADAQABAAACAQDcSZKq0lM9w+ElLp9I9jFvqEFbOV1+iOBX7WEe66GvPLOWl9ul03ecjhOf06+F"
    "hPsWFac1yaxo2xj+SJ+FVZ3DdSn4fjTpS9NGyQVPInSZveetRw0TV0rbYCFBTJuVqUFu6yPEgdcWq8dlUjLqnRNwlelHRcJeBfAC"
    "BZDLNSxjj0oUz7ANRNCEne1ecySwuJUAz3IlNLPXFexRT0alV7Nl9hmJke3dD73nbeGbQtwvtu8GNFEoO4Eu3xOCKsLw6ILLo4FB "
    "harness@example.com"
)
BASTION_USER_DATA = "IyEvYmluL2Jhc2ggLWV1CmlkIGdhcmRlbmVyIHx8IHVzZXJhZGQgZ2FyZGVuZXIgLW1VCg=="


def generate_name(prefix: str = "", length: int = 5, rng: Optional[random.Random] = None) -> str:
    """`prefix` plus a random suffix from [0-9a-z], so parallel runs never collide."""
    rng = rng or random.SystemRandom()
    return prefix + "".join(rng.choice(NAME_CHARSET) for _ in range(length))


@dataclass
class ScenarioEnvironment:
    """Collaborators shared by every scenario of a run."""

    config: HarnessConfig
    store: ObjectStoreClient
    provider: ProviderClient
    poller: Poller
    rng: Optional[random.Random] = None

    def verifier(self) -> OutcomeVerifier:
        return OutcomeVerifier(self.provider, self.config, self.poller)


@dataclass
class Scenario:
    name: str
    run: Callable[[ScenarioEnvironment, CleanupStack], None]
    description: str = ""
    tags: List[str] = field(default_factory=list)


# ============================================================================
# Infrastructure
# ============================================================================


def infrastructure_scenario(
    env: ScenarioEnvironment,
    cleanup: CleanupStack,
    flow: FlowUsage,
    existing_network: bool = False,
    existing_router: bool = False,
):
    config = env.config
    namespace = generate_name(INFRA_NAMESPACE_PREFIX, rng=env.rng)
    provisioner = ExternalResourceProvisioner(env.provider, cleanup)
    verifier = env.verifier()

    network_id = router_id = None
    if existing_network:
        network_id = provisioner.create_network(f"{namespace}-network")
    if existing_router:
        floating_pool_id = provisioner.find_external_network(config.floating_pool_name)
        router_id = provisioner.create_router(f"{namespace}-cloud-router", floating_pool_id)

    provider_config = InfrastructureConfig(
        floating_pool_name=config.floating_pool_name,
        networks=NetworksConfig(
            id=network_id,
            router=RouterRef(id=router_id) if router_id else None,
            workers=config.workers_cidr,
        ),
    )
    cloud_profile_config = CloudProfileConfig(key_stone_urls=[KeyStoneURL(region=config.region, url=config.auth_url)])

    driver = ReconciliationDriver(
        env.store,
        config,
        cleanup,
        env.poller,
        namespace,
        "Infrastructure",
        "infrastructure",
        decode_status=InfrastructureStatus.model_validate,
    )
    driver.setup_prerequisites(cloud_profile_config.model_dump())

    spec = {
        "type": PROVIDER_TYPE,
        "region": config.region,
        "secret_ref": {"name": SECRET_NAME, "namespace": namespace},
        "ssh_public_key": SSH_PUBLIC_KEY,
        "provider_config": provider_config.model_dump(exclude_none=True),
    }
    driver.create(spec, annotations={USE_FLOW_ANNOTATION: "true"} if flow.creates_with_flow else None)
    driver.await_convergence()

    step(logger, "verify infrastructure creation")
    identifiers = verifier.verify_creation(driver.provider_status(), provider_config)

    record = None
    if flow is FlowUsage.USE_FLOW_RECOVER_STATE:
        record = driver.inject_state_loss(empty_flow_state())

    step(logger, "wait until infrastructure is reconciled")
    driver.await_pickup()

    driver.trigger_reconcile(flow.trigger_annotations)

    if record is not None:
        driver.check_state_recovery(record)

    step(logger, "verify infrastructure after reconciliation")
    again = verifier.verify_creation(driver.provider_status(), provider_config)
    if again != identifiers:
        raise VerificationMismatch(
            f"identifiers changed after reconciliation: {identifiers.as_dict()} -> {again.as_dict()}"
        )

    driver.delete()
    step(logger, "verify infrastructure deletion")
    verifier.verify_deletion(identifiers, provider_config)


# ============================================================================
# Bastion
# ============================================================================


def bastion_scenario(env: ScenarioEnvironment, cleanup: CleanupStack):
    config = env.config
    name = generate_name(BASTION_NAME_PREFIX, rng=env.rng)
    provisioner = ExternalResourceProvisioner(env.provider, cleanup)
    verifier = env.verifier()

    step(logger, "setup infrastructure", name=name)
    provisioner.create_security_group(name, name)
    network_id = provisioner.create_network(name)
    subnet_id = provisioner.create_subnet(
        f"{name}-subnet", network_id, BASTION_SUBNET_CIDR, BASTION_SUBNET_GATEWAY, BASTION_ALLOCATION_POOL
    )
    floating_pool_id = provisioner.find_external_network(config.floating_pool_name)
    provisioner.create_router(f"{name}-cloud-router", floating_pool_id, subnet_id)

    shoot = {
        "kind": "Shoot",
        "spec": {
            "region": config.region,
            "secret_binding_name": SECRET_NAME,
            "provider": {
                "infrastructure_config": ShootInfrastructureConfig(
                    floating_pool_name=config.floating_pool_name
                ).model_dump(),
            },
        },
    }
    driver = ReconciliationDriver(env.store, config, cleanup, env.poller, name, "Bastion", f"{name}-bastion")
    driver.setup_prerequisites(CloudProfileConfig().model_dump(), shoot)

    driver.create({"type": PROVIDER_TYPE, "user_data": BASTION_USER_DATA})
    bastion = driver.await_convergence(config.timeouts.bastion)

    env.poller.pause(config.bastion_settle_seconds)
    ingress = (bastion.get("status") or {}).get("ingress") or {}
    ip = ingress.get("ip")
    if not ip:
        raise VerificationMismatch(f"{driver.key} reports no ingress ip")

    step(logger, f"check connection to port {config.bastion_ssh_port} open should not error")
    verify_port_open(ip, config.bastion_ssh_port, config.open_dial_timeout)
    step(logger, f"check connection to port {config.bastion_closed_port} which should fail")
    verify_port_closed(ip, config.bastion_closed_port, config.closed_dial_timeout)

    step(logger, "verify cloud resources")
    options = BastionOptions.for_bastion(driver.key.name)
    verifier.verify_bastion_creation(options.security_group, options.ssh_rule_description, options.instance_name)

    driver.delete()
    step(logger, "verify bastion deletion")
    verifier.verify_bastion_deletion(options.instance_name, options.security_group)


# ============================================================================
# Catalog
# ============================================================================


def _infra(flow: FlowUsage, existing_network: bool = False, existing_router: bool = False):
    def run(env: ScenarioEnvironment, cleanup: CleanupStack):
        infrastructure_scenario(env, cleanup, flow, existing_network, existing_router)

    return run


SCENARIOS: Dict[str, Scenario] = {
    s.name: s
    for s in [
        Scenario("new-network-flow", _infra(FlowUsage.USE_FLOW), "new private network", ["infrastructure"]),
        Scenario(
            "new-network-migration", _infra(FlowUsage.MIGRATE_FROM_LEGACY), "new private network", ["infrastructure"]
        ),
        Scenario("new-network-legacy", _infra(FlowUsage.USE_LEGACY), "new private network", ["infrastructure"]),
        Scenario(
            "existing-router-flow",
            _infra(FlowUsage.USE_FLOW, existing_router=True),
            "existing router",
            ["infrastructure"],
        ),
        Scenario(
            "existing-router-legacy",
            _infra(FlowUsage.USE_LEGACY, existing_router=True),
            "existing router",
            ["infrastructure"],
        ),
        Scenario(
            "existing-network-flow",
            _infra(FlowUsage.USE_FLOW, existing_network=True),
            "existing network",
            ["infrastructure"],
        ),
        Scenario(
            "existing-network-legacy",
            _infra(FlowUsage.USE_LEGACY, existing_network=True),
            "existing network",
            ["infrastructure"],
        ),
        Scenario(
            "existing-network-router-flow-recover",
            _infra(FlowUsage.USE_FLOW_RECOVER_STATE, existing_network=True, existing_router=True),
            "existing network and router",
            ["infrastructure"],
        ),
        Scenario(
            "existing-network-router-legacy",
            _infra(FlowUsage.USE_LEGACY, existing_network=True, existing_router=True),
            "existing network and router",
            ["infrastructure"],
        ),
        Scenario("bastion", bastion_scenario, "bastion create and delete", ["bastion"]),
    ]
}


def run_scenario(scenario: Scenario, env: ScenarioEnvironment) -> ScenarioResult:
    """Run one scenario with its own cleanup stack and classify the outcome."""
    logger.info("=" * 60)
    logger.info("Scenario: %s (%s)", scenario.name, scenario.description)
    stopwatch = Stopwatch()
    cleanup = CleanupStack()
    error: Optional[BaseException] = None
    try:
        scenario.run(env, cleanup)
    except Exception as e:
        logger.error("Scenario %s failed: %s", scenario.name, e)
        error = e
    finally:
        step(logger, "running cleanup actions", pending=cleanup.pending())
        teardown_errors = cleanup.run_all()

    result = ScenarioResult(
        name=scenario.name,
        passed=error is None,
        error=error,
        teardown_errors=teardown_errors,
        duration_s=stopwatch.elapsed(),
    )
    outcome = "passed" if result.passed else result.failure_kind
    if result.passed and teardown_errors:
        outcome = "teardown-failed"
    METRICS["scenarios_total"].labels(outcome=outcome).inc()
    return result


def select(names: Optional[List[str]] = None) -> List[Scenario]:
    """Scenarios by name or tag, in catalog order; all of them when `names` is empty."""
    if not names:
        return list(SCENARIOS.values())
    wanted = set(names)
    unknown = wanted - set(SCENARIOS) - {t for s in SCENARIOS.values() for t in s.tags}
    if unknown:
        raise KeyError(f"unknown scenarios: {', '.join(sorted(unknown))}")
    return [s for s in SCENARIOS.values() if s.name in wanted or wanted & set(s.tags)]
