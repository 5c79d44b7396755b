"""
Declarative object store client.

Objects are plain dicts in the store's wire form. Cluster-scoped kinds use
an empty namespace, which travels as "_" in URLs.
"""

import copy
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..errors import NotFoundError
from .base import ApiClient

CLUSTER_SCOPE = "_"


@dataclass(frozen=True)
class ObjectKey:
    kind: str
    namespace: str
    name: str

    @classmethod
    def of(cls, obj: Dict[str, Any]) -> "ObjectKey":
        return cls(obj["kind"], obj.get("namespace") or "", obj["name"])

    @property
    def path(self) -> str:
        return f"/objects/{self.kind}/{self.namespace or CLUSTER_SCOPE}/{self.name}"

    def __str__(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


def new_object(
    kind: str,
    name: str,
    namespace: str = "",
    spec: Optional[Dict[str, Any]] = None,
    annotations: Optional[Dict[str, str]] = None,
    data: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "kind": kind,
        "namespace": namespace,
        "name": name,
        "annotations": dict(annotations or {}),
        "spec": spec or {},
        "data": data or {},
    }


def set_annotation(obj: Dict[str, Any], key: str, value: str):
    obj.setdefault("annotations", {})[key] = value


def deep_copy(obj: Dict[str, Any]) -> Dict[str, Any]:
    return copy.deepcopy(obj)


class ObjectStoreClient(ApiClient):
    def __init__(self, base_url: str = "", http: Optional[httpx.Client] = None, timeout: float = 30.0):
        super().__init__(base_url=base_url, http=http, prefix="/store", timeout=timeout)

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("POST", f"/objects/{obj['kind']}", json=obj)

    def get(self, key: ObjectKey) -> Dict[str, Any]:
        return self.request("GET", key.path)

    def list(self, kind: str, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"namespace": namespace} if namespace is not None else None
        return self.request("GET", f"/objects/{kind}", params=params)

    def patch(self, key: ObjectKey, merge_patch: Dict[str, Any]) -> Dict[str, Any]:
        """Merge-patch annotations, finalizers or spec. Status is ignored here."""
        return self.request("PATCH", key.path, json=merge_patch)

    def patch_status(self, key: ObjectKey, merge_patch: Dict[str, Any]) -> Dict[str, Any]:
        return self.request("PATCH", f"{key.path}/status", json=merge_patch)

    def delete(self, key: ObjectKey):
        self.request("DELETE", key.path)

    def delete_ignoring_not_found(self, key: ObjectKey) -> bool:
        try:
            self.delete(key)
            return True
        except NotFoundError:
            return False

    def exists(self, key: ObjectKey) -> bool:
        try:
            self.get(key)
            return True
        except NotFoundError:
            return False
