import json

import pytest

from convergence_harness.flow_state import (
    FLOW,
    LEGACY,
    decode_state,
    empty_flow_state,
    encode_flow_state,
    encode_legacy_state,
)


def test_flow_state_is_canonical():
    first = encode_flow_state({"router_id": "router-1", "network_id": "net-1"})
    second = encode_flow_state({"network_id": "net-1", "router_id": "router-1"})

    assert first == second
    assert first == '{"data":{"network_id":"net-1","router_id":"router-1"},"version":"v1"}'


def test_empty_values_are_dropped():
    assert encode_flow_state({"network_id": "net-1", "router_id": ""}) == encode_flow_state({"network_id": "net-1"})


def test_empty_flow_state():
    assert json.loads(empty_flow_state()) == {"data": {}, "version": "v1"}


def test_decode_both_formats():
    assert decode_state(encode_flow_state({"a": "1"})) == (FLOW, {"a": "1"})
    assert decode_state(encode_legacy_state({"a": "1"})) == (LEGACY, {"a": "1"})
    assert decode_state(None) == (None, {})
    assert decode_state("") == (None, {})


def test_legacy_and_flow_bytes_differ():
    assert encode_flow_state({"a": "1"}) != encode_legacy_state({"a": "1"})


@pytest.mark.parametrize("raw", ["not json", '{"version": "v9", "data": {}}'])
def test_decode_rejects_unknown_payloads(raw):
    with pytest.raises(ValueError):
        decode_state(raw)
