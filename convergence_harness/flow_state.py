"""
Persisted reconciler state.

The flow strategy stores `{"data": {...}, "version": "v1"}` as canonical JSON
(sorted keys, no whitespace), so equal contents always give equal bytes.
The legacy strategy stores its resource outputs under a different envelope.
The harness only needs the empty flow state, which it writes as the baseline
when it drops state.
"""

import json
from typing import Dict, Optional, Tuple

FLOW_STATE_VERSION = "v1"
LEGACY_STATE_VERSION = "legacy-v1"

FLOW = "flow"
LEGACY = "legacy"


def _canonical(payload) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def encode_flow_state(data: Dict[str, str]) -> str:
    return _canonical({"data": {k: v for k, v in data.items() if v}, "version": FLOW_STATE_VERSION})


def encode_legacy_state(outputs: Dict[str, str]) -> str:
    return _canonical({"outputs": {k: v for k, v in outputs.items() if v}, "version": LEGACY_STATE_VERSION})


def empty_flow_state() -> str:
    return encode_flow_state({})


def decode_state(raw: Optional[str]) -> Tuple[Optional[str], Dict[str, str]]:
    """(format, entries) of a persisted state; (None, {}) when there is none."""
    if not raw:
        return None, {}
    try:
        payload = json.loads(raw)
    except ValueError as e:
        raise ValueError(f"persisted state is not valid JSON: {e}") from e
    version = payload.get("version")
    if version == FLOW_STATE_VERSION:
        return FLOW, dict(payload.get("data") or {})
    if version == LEGACY_STATE_VERSION:
        return LEGACY, dict(payload.get("outputs") or {})
    raise ValueError(f"unknown state version {version!r}")
