"""End-to-end scenario runs against the simulator and the reference reconciler."""

import dataclasses
import random
import threading

import pytest

from convergence_harness.clients.provider_client import NETWORKS, ROUTERS
from convergence_harness.config import Timeouts
from convergence_harness.driver import ReconciliationDriver
from convergence_harness.errors import ConvergenceTimeout, SetupError, VerificationMismatch, WaitCancelled
from convergence_harness.poller import Poller
from convergence_harness.scenarios import (
    BASTION_NAME_PREFIX,
    INFRA_NAMESPACE_PREFIX,
    NAME_CHARSET,
    SCENARIOS,
    ScenarioEnvironment,
    generate_name,
    run_scenario,
    select,
)
from convergence_harness.simulator.provider_logic import ProviderSettings
from convergence_harness.simulator.reconciler import INFRASTRUCTURE


@pytest.fixture
def settings():
    return ProviderSettings(provisioning_delay=0.05, deprovisioning_delay=0.2)


@pytest.fixture
def env(reconciler, config, store, provider, poller, floating_pool_id):
    return ScenarioEnvironment(config=config, store=store, provider=provider, poller=poller, rng=random.Random(7))


def leftovers(provider):
    """Provider networks other than the floating pool that are still live."""
    return [n for n in provider.list(NETWORKS) if not n["external"] and n["status"] != "PENDING_DELETE"]


def test_generate_name():
    name = generate_name(INFRA_NAMESPACE_PREFIX)

    assert name.startswith(INFRA_NAMESPACE_PREFIX)
    assert len(name) == len(INFRA_NAMESPACE_PREFIX) + 5
    assert set(name[len(INFRA_NAMESPACE_PREFIX):]) <= set(NAME_CHARSET)


def test_generate_name_is_reproducible_with_seed():
    assert generate_name(BASTION_NAME_PREFIX, rng=random.Random(1)) == generate_name(
        BASTION_NAME_PREFIX, rng=random.Random(1)
    )


def test_select_by_name_and_tag():
    assert [s.name for s in select(["bastion"])] == ["bastion"]
    assert len(select(["infrastructure"])) == 9
    assert select([]) == list(SCENARIOS.values())

    with pytest.raises(KeyError, match="nope"):
        select(["nope"])


@pytest.mark.parametrize("name", list(SCENARIOS))
def test_scenario_passes_against_reference_reconciler(env, provider, name):
    result = run_scenario(SCENARIOS[name], env)

    assert result.error is None, result.error
    assert result.passed
    assert result.teardown_errors == []
    assert leftovers(provider) == []


def test_leaking_reconciler_is_reported(env, reconciler, provider):
    reconciler.handlers[INFRASTRUCTURE]["delete"] = lambda obj: None
    impatient = dataclasses.replace(env, config=dataclasses.replace(env.config, consistency_grace=0.2))

    result = run_scenario(SCENARIOS["new-network-flow"], impatient)

    assert not result.passed
    assert isinstance(result.error, VerificationMismatch)
    assert result.failure_kind == "system-under-test"
    assert "network deleted" in str(result.error)


def test_stalled_reconciler_times_out(env, reconciler):
    reconciler.stop()
    timeouts = Timeouts.fast(interval=0.02, ceiling=0.5)
    hurried = dataclasses.replace(env, config=dataclasses.replace(env.config, timeouts=timeouts))

    result = run_scenario(SCENARIOS["new-network-legacy"], hurried)

    assert isinstance(result.error, ConvergenceTimeout)
    assert result.failure_kind == "system-under-test"


def test_missing_floating_pool_is_an_environment_failure(env):
    broken = dataclasses.replace(env, config=dataclasses.replace(env.config, floating_pool_name="no-such-pool"))

    result = run_scenario(SCENARIOS["existing-router-flow"], broken)

    assert isinstance(result.error, SetupError)
    assert result.failure_kind == "environment"
    assert result.teardown_errors == []


def test_every_variant_waits_for_pickup_before_triggering(env, monkeypatch):
    calls = []
    await_pickup = ReconciliationDriver.await_pickup

    def recording(self):
        calls.append(self.state)
        return await_pickup(self)

    monkeypatch.setattr(ReconciliationDriver, "await_pickup", recording)

    result = run_scenario(SCENARIOS["new-network-legacy"], env)

    assert result.passed, result.error
    assert len(calls) == 1


def test_cancelled_scenario_still_tears_everything_down(env, provider, monkeypatch):
    cancel = threading.Event()
    converge = ReconciliationDriver.await_convergence

    def converge_then_cancel(self, tier=None):
        obj = converge(self, tier)
        cancel.set()
        return obj

    monkeypatch.setattr(ReconciliationDriver, "await_convergence", converge_then_cancel)
    cancellable = dataclasses.replace(env, poller=Poller(max_fetch_errors=env.config.max_fetch_errors, cancel=cancel))

    result = run_scenario(SCENARIOS["existing-router-flow"], cancellable)

    assert isinstance(result.error, WaitCancelled)
    assert result.failure_kind == "environment"
    assert result.teardown_errors == []
    assert leftovers(provider) == []
    assert [r for r in provider.list(ROUTERS) if r["status"] != "PENDING_DELETE"] == []
