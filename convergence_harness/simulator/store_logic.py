# simulator/store_logic.py
"""
Object store semantics shared by the REST layer.

Every write bumps a global resource version. Spec changes bump the object's
generation. Deleting an object that still has finalizers only marks it;
the row goes away once the last finalizer is removed.
"""

import copy
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from .models import ResourceVersionCounter, StoredObject

PATCHABLE_FIELDS = ("annotations", "finalizers", "spec")


class ObjectNotFound(LookupError):
    pass


class ObjectExists(ValueError):
    pass


def next_resource_version(db: Session) -> int:
    counter = db.query(ResourceVersionCounter).first()
    if counter is None:
        counter = ResourceVersionCounter(current=1)
        db.add(counter)
    else:
        counter.current += 1
    db.flush()
    return counter.current


def merge_patch(target: Any, patch: Any) -> Any:
    """JSON merge patch: dicts merge recursively, null removes, anything else replaces."""
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)
    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def to_wire(obj: StoredObject) -> Dict[str, Any]:
    return {
        "kind": obj.kind,
        "namespace": obj.namespace,
        "name": obj.name,
        "resource_version": str(obj.resource_version),
        "generation": obj.generation,
        "annotations": obj.annotations or {},
        "finalizers": obj.finalizers or [],
        "deletion_timestamp": obj.deletion_timestamp.isoformat() if obj.deletion_timestamp else None,
        "spec": obj.spec or {},
        "data": obj.data or {},
        "status": obj.status or {},
    }


def _query(db: Session, kind: str, namespace: str, name: str) -> Optional[StoredObject]:
    return (
        db.query(StoredObject)
        .filter(StoredObject.kind == kind, StoredObject.namespace == namespace, StoredObject.name == name)
        .first()
    )


def get_object_logic(db: Session, kind: str, namespace: str, name: str) -> StoredObject:
    obj = _query(db, kind, namespace, name)
    if obj is None:
        raise ObjectNotFound(f"{kind} {namespace}/{name} not found")
    return obj


def list_objects_logic(db: Session, kind: str, namespace: Optional[str] = None) -> List[StoredObject]:
    query = db.query(StoredObject).filter(StoredObject.kind == kind)
    if namespace is not None:
        query = query.filter(StoredObject.namespace == namespace)
    return query.order_by(StoredObject.id).all()


def create_object_logic(db: Session, payload: Dict[str, Any]) -> StoredObject:
    kind, namespace, name = payload["kind"], payload.get("namespace") or "", payload["name"]
    if _query(db, kind, namespace, name) is not None:
        raise ObjectExists(f"{kind} {namespace}/{name} already exists")
    obj = StoredObject(
        kind=kind,
        namespace=namespace,
        name=name,
        resource_version=next_resource_version(db),
        generation=1,
        annotations=dict(payload.get("annotations") or {}),
        finalizers=list(payload.get("finalizers") or []),
        spec=copy.deepcopy(payload.get("spec") or {}),
        data=dict(payload.get("data") or {}),
        status={},
    )
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


def patch_object_logic(db: Session, kind: str, namespace: str, name: str, patch: Dict[str, Any]) -> Optional[StoredObject]:
    """Returns None when removing the last finalizer completed a pending deletion."""
    obj = get_object_logic(db, kind, namespace, name)
    if "annotations" in patch:
        obj.annotations = merge_patch(obj.annotations or {}, patch["annotations"] or {})
    if "finalizers" in patch:
        obj.finalizers = list(patch["finalizers"] or [])
    if "spec" in patch:
        new_spec = merge_patch(obj.spec or {}, patch["spec"] or {})
        if new_spec != (obj.spec or {}):
            obj.spec = new_spec
            obj.generation += 1
    if obj.deletion_timestamp is not None and not obj.finalizers:
        db.delete(obj)
        db.commit()
        return None
    obj.resource_version = next_resource_version(db)
    db.commit()
    db.refresh(obj)
    return obj


def patch_status_logic(db: Session, kind: str, namespace: str, name: str, patch: Dict[str, Any]) -> StoredObject:
    obj = get_object_logic(db, kind, namespace, name)
    obj.status = merge_patch(obj.status or {}, patch)
    obj.resource_version = next_resource_version(db)
    db.commit()
    db.refresh(obj)
    return obj


def delete_object_logic(db: Session, kind: str, namespace: str, name: str) -> Optional[StoredObject]:
    """Returns the marked object, or None when it was removed outright."""
    obj = get_object_logic(db, kind, namespace, name)
    if obj.finalizers:
        if obj.deletion_timestamp is None:
            obj.deletion_timestamp = datetime.utcnow()
            obj.resource_version = next_resource_version(db)
            db.commit()
            db.refresh(obj)
        return obj
    db.delete(obj)
    db.commit()
    return None
