import pytest

from convergence_harness.clients.store_client import ObjectKey, new_object
from convergence_harness.errors import AlreadyExistsError, ClientError, NotFoundError
from convergence_harness.simulator.store_logic import merge_patch


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_metrics_endpoint(client):
    client.get("/health")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "simulator_api_requests_total" in response.text


def test_create_and_get_object(store):
    created = store.create(new_object("Infrastructure", "infrastructure", "ns-1", spec={"region": "eu-1"}))

    assert created["generation"] == 1
    assert created["status"] == {}
    fetched = store.get(ObjectKey("Infrastructure", "ns-1", "infrastructure"))
    assert fetched["spec"] == {"region": "eu-1"}
    assert fetched["resource_version"] == created["resource_version"]


def test_cluster_scoped_objects(store):
    store.create(new_object("Namespace", "ns-1"))

    assert store.exists(ObjectKey("Namespace", "", "ns-1"))
    assert [o["name"] for o in store.list("Namespace", namespace="")] == ["ns-1"]


def test_create_twice_conflicts(store):
    store.create(new_object("Namespace", "ns-1"))

    with pytest.raises(AlreadyExistsError):
        store.create(new_object("Namespace", "ns-1"))


def test_kind_must_match_path(client):
    response = client.post("/store/objects/Bastion", json={"kind": "Infrastructure", "name": "x"})
    assert response.status_code == 400


def test_get_missing_object(store):
    with pytest.raises(NotFoundError):
        store.get(ObjectKey("Infrastructure", "ns-1", "missing"))
    assert store.delete_ignoring_not_found(ObjectKey("Infrastructure", "ns-1", "missing")) is False


def test_list_filters_by_namespace(store):
    store.create(new_object("Secret", "cloudprovider", "ns-1"))
    store.create(new_object("Secret", "cloudprovider", "ns-2"))

    assert len(store.list("Secret")) == 2
    assert [o["namespace"] for o in store.list("Secret", namespace="ns-2")] == ["ns-2"]


def test_every_write_bumps_resource_version(store):
    key = ObjectKey("Infrastructure", "ns-1", "infrastructure")
    created = store.create(new_object(key.kind, key.name, key.namespace))
    annotated = store.patch(key, {"annotations": {"a": "b"}})
    status = store.patch_status(key, {"ready": True})

    versions = [int(o["resource_version"]) for o in (created, annotated, status)]
    assert versions == sorted(set(versions))


def test_spec_change_bumps_generation(store):
    key = ObjectKey("Infrastructure", "ns-1", "infrastructure")
    store.create(new_object(key.kind, key.name, key.namespace, spec={"region": "eu-1"}))

    assert store.patch(key, {"annotations": {"a": "b"}})["generation"] == 1
    assert store.patch(key, {"spec": {"region": "eu-1"}})["generation"] == 1
    assert store.patch(key, {"spec": {"region": "eu-2"}})["generation"] == 2


def test_annotation_removed_with_null(store):
    key = ObjectKey("Infrastructure", "ns-1", "infrastructure")
    store.create(new_object(key.kind, key.name, key.namespace, annotations={"keep": "1", "drop": "1"}))

    patched = store.patch(key, {"annotations": {"drop": None}})

    assert patched["annotations"] == {"keep": "1"}


def test_status_is_not_patchable_through_main_resource(client, store):
    store.create(new_object("Infrastructure", "infrastructure", "ns-1"))

    response = client.patch("/store/objects/Infrastructure/ns-1/infrastructure", json={"status": {"ready": True}})

    assert response.status_code == 400


def test_status_patch_merges(store):
    key = ObjectKey("Infrastructure", "ns-1", "infrastructure")
    store.create(new_object(key.kind, key.name, key.namespace))
    store.patch_status(key, {"provider_status": {"a": 1}, "state": "{}"})

    patched = store.patch_status(key, {"provider_status": None, "ready": True})

    assert patched["status"] == {"state": "{}", "ready": True}


def test_delete_without_finalizers_removes_object(store):
    key = ObjectKey("Namespace", "", "ns-1")
    store.create(new_object("Namespace", "ns-1"))

    store.delete(key)

    assert not store.exists(key)


def test_finalizers_hold_deletion(store):
    key = ObjectKey("Infrastructure", "ns-1", "infrastructure")
    store.create(new_object(key.kind, key.name, key.namespace))
    store.patch(key, {"finalizers": ["extensions.convergence.dev/openstack"]})

    store.delete(key)
    marked = store.get(key)
    assert marked["deletion_timestamp"] is not None

    store.delete(key)
    assert store.get(key)["deletion_timestamp"] == marked["deletion_timestamp"]

    assert store.patch(key, {"finalizers": []}) is None
    assert not store.exists(key)


def test_transport_failure_is_client_error():
    from convergence_harness.clients.store_client import ObjectStoreClient

    unreachable = ObjectStoreClient("http://127.0.0.1:9", timeout=0.5)
    try:
        with pytest.raises(ClientError):
            unreachable.list("Namespace")
    finally:
        unreachable.close()


# merge patch


def test_merge_patch_is_recursive():
    target = {"a": {"b": 1, "c": 2}, "d": [1, 2]}

    result = merge_patch(target, {"a": {"b": None, "e": 3}, "d": [3]})

    assert result == {"a": {"c": 2, "e": 3}, "d": [3]}
    assert target == {"a": {"b": 1, "c": 2}, "d": [1, 2]}


def test_merge_patch_replaces_non_dicts():
    assert merge_patch({"a": 1}, "scalar") == "scalar"
    assert merge_patch("scalar", {"a": 1}) == {"a": 1}
