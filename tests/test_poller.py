import threading

import pytest

from convergence_harness.errors import (
    ClientError,
    ConvergenceTimeout,
    ReconcileFailed,
    TransientFetchError,
    WaitCancelled,
    is_system_under_test_failure,
)
from convergence_harness.poller import (
    OPERATION_ANNOTATION,
    Poller,
    extension_object_ready,
    object_gone,
    operation_annotation_removed,
    operation_annotation_removed_since,
)


def ready_object(**overrides):
    obj = {
        "kind": "Infrastructure",
        "name": "infrastructure",
        "generation": 2,
        "resource_version": "7",
        "annotations": {},
        "status": {
            "ready": True,
            "observed_generation": 2,
            "last_operation": {"type": "Create", "state": "Succeeded"},
        },
    }
    obj.update(overrides)
    return obj


class Sequence:
    """Fetch function returning (or raising) the given items in order, then repeating the last."""

    def __init__(self, *items):
        self.items = list(items)
        self.calls = 0

    def __call__(self):
        item = self.items[min(self.calls, len(self.items) - 1)]
        self.calls += 1
        if isinstance(item, Exception):
            raise item
        return item


def make_poller(fake_clock, max_fetch_errors=5, cancel=None):
    return Poller(max_fetch_errors=max_fetch_errors, cancel=cancel, clock=fake_clock, sleep=fake_clock.sleep)


def truthy(value):
    return None if value else "not yet"


def test_early_timeout_suspends_before_first_fetch(fake_clock):
    fetch = Sequence(True)
    poller = make_poller(fake_clock)

    poller.wait_until(fetch, truthy, early_timeout=10, poll_interval=30, absolute_timeout=100)

    assert fake_clock.sleeps == [10]
    assert fetch.calls == 1


def test_polls_at_interval_until_satisfied(fake_clock):
    fetch = Sequence(False, False, "done")
    poller = make_poller(fake_clock)

    result = poller.wait_until(fetch, truthy, early_timeout=0, poll_interval=5, absolute_timeout=100)

    assert result == "done"
    assert fake_clock.sleeps == [5, 5]


def test_timeout_reports_last_reason_and_status(fake_clock):
    obj = ready_object(status={"ready": False, "observed_generation": 2, "last_operation": {"state": "Processing"}})
    poller = make_poller(fake_clock)

    with pytest.raises(ConvergenceTimeout) as exc_info:
        poller.wait_until(lambda: obj, extension_object_ready, 0, 10, 25, description="infra to be ready")

    error = exc_info.value
    assert error.description == "infra to be ready"
    assert error.elapsed == pytest.approx(25)
    assert error.last_status == obj["status"]
    assert "Processing" in error.reason


def test_absolute_timeout_caps_the_last_suspend(fake_clock):
    poller = make_poller(fake_clock)

    with pytest.raises(ConvergenceTimeout):
        poller.wait_until(lambda: False, truthy, 0, 30, 45)

    assert fake_clock.sleeps == [30, 15]


def test_fetch_errors_are_tolerated(fake_clock):
    fetch = Sequence(ConnectionError("reset"), ConnectionError("reset"), "ok")
    poller = make_poller(fake_clock, max_fetch_errors=2)

    assert poller.wait_until(fetch, truthy, 0, 1, 100) == "ok"


def test_too_many_consecutive_fetch_errors_fail_the_wait(fake_clock):
    fetch = Sequence(ConnectionError("reset"))
    poller = make_poller(fake_clock, max_fetch_errors=2)

    with pytest.raises(ConvergenceTimeout) as exc_info:
        poller.wait_until(fetch, truthy, 0, 1, 100)

    assert fetch.calls == 3
    assert isinstance(exc_info.value.__cause__, TransientFetchError)
    assert exc_info.value.environment_caused


def test_unreachable_store_is_not_blamed_on_the_reconciler(fake_clock):
    fetch = Sequence(ClientError("connection refused"))
    poller = make_poller(fake_clock, max_fetch_errors=2)

    with pytest.raises(ConvergenceTimeout) as exc_info:
        poller.wait_until(fetch, truthy, 0, 1, 100)

    assert not is_system_under_test_failure(exc_info.value)


def test_timeout_with_readable_object_is_blamed_on_the_reconciler(fake_clock):
    poller = make_poller(fake_clock)

    with pytest.raises(ConvergenceTimeout) as exc_info:
        poller.wait_until(lambda: False, truthy, 0, 1, 3)

    assert not exc_info.value.environment_caused
    assert is_system_under_test_failure(exc_info.value)


def test_successful_fetch_resets_error_count(fake_clock):
    fetch = Sequence(
        ConnectionError("a"), ConnectionError("b"), False, ConnectionError("c"), ConnectionError("d"), "ok"
    )
    poller = make_poller(fake_clock, max_fetch_errors=2)

    assert poller.wait_until(fetch, truthy, 0, 1, 100) == "ok"


def test_terminal_error_ends_wait_immediately(fake_clock):
    obj = ready_object(
        status={
            "ready": False,
            "last_error": {"description": "bad config", "codes": ["ERR_CONFIGURATION_PROBLEM"]},
        }
    )
    poller = make_poller(fake_clock)

    with pytest.raises(ReconcileFailed) as exc_info:
        poller.wait_until(lambda: obj, extension_object_ready, 0, 10, 1000)

    assert "bad config" in str(exc_info.value)
    assert fake_clock.sleeps == []


def test_cancel_aborts_wait():
    cancel = threading.Event()
    cancel.set()
    poller = Poller(cancel=cancel)

    with pytest.raises(WaitCancelled):
        poller.wait_until(lambda: False, truthy, 0, 0.01, 10)


def test_cancel_interrupts_real_sleep():
    cancel = threading.Event()
    poller = Poller(cancel=cancel)
    timer = threading.Timer(0.05, cancel.set)
    timer.start()

    with pytest.raises(WaitCancelled):
        poller.wait_until(lambda: False, truthy, 0, 30, 60)
    timer.cancel()


def test_pause_honours_cancel():
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(WaitCancelled):
        Poller(cancel=cancel).pause(5)


def test_detached_poller_ignores_cancel(fake_clock):
    cancel = threading.Event()
    cancel.set()
    poller = Poller(max_fetch_errors=3, cancel=cancel, clock=fake_clock, sleep=fake_clock.sleep)

    detached = poller.detached()

    assert detached.wait_until(Sequence(False, "ok"), truthy, 0, 1, 10) == "ok"
    assert detached.max_fetch_errors == 3
    assert fake_clock.sleeps == [1]


# Predicates


def test_ready_object_satisfies_predicate():
    assert extension_object_ready(ready_object()) is None


@pytest.mark.parametrize(
    "overrides, reason",
    [
        ({"annotations": {OPERATION_ANNOTATION: "reconcile"}}, "annotation"),
        ({"generation": 3}, "generation"),
        ({"status": {"ready": True, "observed_generation": 2}}, "unknown"),
        (
            {"status": {"ready": False, "observed_generation": 2, "last_operation": {"state": "Succeeded"}}},
            "not ready",
        ),
        ({"status": {"last_error": {"description": "quota wobble", "codes": []}}}, "quota wobble"),
    ],
)
def test_unready_objects_give_a_reason(overrides, reason):
    assert reason in extension_object_ready(ready_object(**overrides))


def test_annotation_removed_since_rejects_stale_copy():
    predicate = operation_annotation_removed_since("7")

    assert predicate(ready_object(resource_version="7")) == "cache not updated yet"
    assert predicate(ready_object(resource_version="9", annotations={OPERATION_ANNOTATION: "reconcile"}))
    assert predicate(ready_object(resource_version="9")) is None


def test_annotation_removed():
    assert operation_annotation_removed(ready_object()) is None
    assert operation_annotation_removed(ready_object(annotations={OPERATION_ANNOTATION: "reconcile"}))


def test_object_gone():
    assert object_gone(None) is None
    assert object_gone(ready_object(deletion_timestamp="2024-01-01T00:00:00")) == "deletion in progress"
    assert object_gone(ready_object()) == "object still exists"
