# File: convergence_harness/simulator/rest_api_server.py
#!/usr/bin/env python3
"""
Simulator REST API Server

FastAPI app standing in for a real control plane during local runs and tests.
Serves two APIs side by side:
- /store: declarative object store (objects, status subresource, finalizers)
- /provider: cloud provider (networks, subnets, routers, security groups,
  keypairs, floating IPs, servers)
"""

import logging
import time
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..metrics import METRICS
from . import provider_logic as services
from . import store_logic as store
from .provider_logic import InvalidRequest, ProviderSettings, ResourceConflict, ResourceNotFound
from .store_logic import ObjectExists, ObjectNotFound

logger = logging.getLogger("convergence_harness.simulator.api")

CLUSTER_SCOPE = "_"


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request) -> ProviderSettings:
    return request.app.state.settings


def _namespace(namespace: str) -> str:
    return "" if namespace == CLUSTER_SCOPE else namespace


# ============================================================================
# Object store
# ============================================================================


class ObjectCreate(BaseModel):
    kind: str
    namespace: str = ""
    name: str = Field(..., min_length=1, max_length=253)
    annotations: Dict[str, str] = Field(default_factory=dict)
    finalizers: List[str] = Field(default_factory=list)
    spec: Dict[str, Any] = Field(default_factory=dict)
    data: Dict[str, str] = Field(default_factory=dict)


store_router = APIRouter(prefix="/store", tags=["store"])


@store_router.post("/objects/{kind}", status_code=201)
def create_object(kind: str, obj: ObjectCreate, db: Session = Depends(get_db)):
    if obj.kind != kind:
        raise HTTPException(status_code=400, detail=f"kind {obj.kind} does not match path {kind}")
    try:
        created = store.create_object_logic(db, obj.model_dump())
    except ObjectExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    return store.to_wire(created)


@store_router.get("/objects/{kind}")
def list_objects(kind: str, namespace: Optional[str] = None, db: Session = Depends(get_db)):
    if namespace is not None:
        namespace = _namespace(namespace)
    return [store.to_wire(o) for o in store.list_objects_logic(db, kind, namespace)]


@store_router.get("/objects/{kind}/{namespace}/{name}")
def get_object(kind: str, namespace: str, name: str, db: Session = Depends(get_db)):
    try:
        return store.to_wire(store.get_object_logic(db, kind, _namespace(namespace), name))
    except ObjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@store_router.patch("/objects/{kind}/{namespace}/{name}")
def patch_object(kind: str, namespace: str, name: str, patch: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    unknown = set(patch) - set(store.PATCHABLE_FIELDS)
    if unknown:
        raise HTTPException(status_code=400, detail=f"fields not patchable here: {sorted(unknown)}")
    try:
        obj = store.patch_object_logic(db, kind, _namespace(namespace), name, patch)
    except ObjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    if obj is None:
        return Response(status_code=204)
    return store.to_wire(obj)


@store_router.patch("/objects/{kind}/{namespace}/{name}/status")
def patch_object_status(
    kind: str, namespace: str, name: str, patch: Dict[str, Any] = Body(...), db: Session = Depends(get_db)
):
    try:
        return store.to_wire(store.patch_status_logic(db, kind, _namespace(namespace), name, patch))
    except ObjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))


@store_router.delete("/objects/{kind}/{namespace}/{name}")
def delete_object(kind: str, namespace: str, name: str, db: Session = Depends(get_db)):
    try:
        marked = store.delete_object_logic(db, kind, _namespace(namespace), name)
    except ObjectNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    if marked is None:
        return {"message": f"{kind} {name} deleted"}
    return {"message": f"{kind} {name} deletion initiated"}


# ============================================================================
# Provider
# ============================================================================


class NetworkCreate(BaseModel):
    name: str = Field(..., min_length=1)
    external: bool = False


class AllocationPool(BaseModel):
    start: str
    end: str


class SubnetCreate(BaseModel):
    name: str = Field(..., min_length=1)
    network_id: str
    cidr: str
    gateway_ip: Optional[str] = None
    allocation_pools: List[AllocationPool] = Field(default_factory=list)
    ip_version: int = 4


class RouterCreate(BaseModel):
    name: str = Field(..., min_length=1)
    admin_state_up: bool = True
    external_gateway_network_id: Optional[str] = None


class RouterInterfaceRequest(BaseModel):
    subnet_id: str


class SecurityGroupCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""


class SecurityGroupRuleCreate(BaseModel):
    security_group_id: str
    direction: str = "ingress"
    protocol: Optional[str] = "tcp"
    port_range_min: Optional[int] = None
    port_range_max: Optional[int] = None
    remote_ip_prefix: Optional[str] = None
    remote_group_id: Optional[str] = None
    description: str = ""


class KeyPairCreate(BaseModel):
    name: str = Field(..., min_length=1)
    public_key: str


class ServerCreate(BaseModel):
    name: str = Field(..., min_length=1)
    network_id: str
    security_group_ids: List[str] = Field(default_factory=list)
    user_data: str = ""
    key_name: Optional[str] = None


class FloatingIPCreate(BaseModel):
    floating_network_id: str
    description: str = ""
    server_id: Optional[str] = None


provider_router = APIRouter(prefix="/provider", tags=["provider"])


def _created(db: Session, kind: str, row) -> Dict[str, Any]:
    services.update_gauges(db)
    return services.serialize(db, kind, row)


@provider_router.post("/networks", status_code=201)
def create_network(body: NetworkCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)):
    return _created(db, "networks", services.create_network_logic(db, settings, body.name, body.external))


@provider_router.post("/subnets", status_code=201)
def create_subnet(body: SubnetCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)):
    subnet = services.create_subnet_logic(
        db,
        settings,
        body.network_id,
        body.name,
        body.cidr,
        body.gateway_ip,
        [p.model_dump() for p in body.allocation_pools],
        body.ip_version,
    )
    return _created(db, "subnets", subnet)


@provider_router.post("/routers", status_code=201)
def create_router(body: RouterCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)):
    router = services.create_router_logic(
        db, settings, body.name, body.external_gateway_network_id, body.admin_state_up
    )
    return _created(db, "routers", router)


@provider_router.put("/routers/{router_id}/add_router_interface")
def add_router_interface(
    router_id: str,
    body: RouterInterfaceRequest,
    db: Session = Depends(get_db),
    settings: ProviderSettings = Depends(get_settings),
):
    router = services.add_router_interface_logic(db, settings, router_id, body.subnet_id)
    return services.serialize(db, "routers", router)


@provider_router.put("/routers/{router_id}/remove_router_interface")
def remove_router_interface(
    router_id: str,
    body: RouterInterfaceRequest,
    db: Session = Depends(get_db),
    settings: ProviderSettings = Depends(get_settings),
):
    router = services.remove_router_interface_logic(db, settings, router_id, body.subnet_id)
    return services.serialize(db, "routers", router)


@provider_router.post("/security-groups", status_code=201)
def create_security_group(
    body: SecurityGroupCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    group = services.create_security_group_logic(db, settings, body.name, body.description)
    return _created(db, "security-groups", group)


@provider_router.post("/security-group-rules", status_code=201)
def create_security_group_rule(
    body: SecurityGroupRuleCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    fields = body.model_dump()
    rule = services.create_security_group_rule_logic(db, settings, fields.pop("security_group_id"), **fields)
    return services.serialize(db, "security-group-rules", rule)


@provider_router.post("/keypairs", status_code=201)
def create_keypair(body: KeyPairCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)):
    return _created(db, "keypairs", services.create_keypair_logic(db, settings, body.name, body.public_key))


@provider_router.post("/servers", status_code=201)
def create_server(body: ServerCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)):
    server = services.create_server_logic(
        db, settings, body.name, body.network_id, body.security_group_ids, body.user_data, body.key_name
    )
    return _created(db, "servers", server)


@provider_router.post("/floating-ips", status_code=201)
def create_floating_ip(
    body: FloatingIPCreate, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    fip = services.create_floating_ip_logic(db, settings, body.floating_network_id, body.description, body.server_id)
    return _created(db, "floating-ips", fip)


@provider_router.get("/{kind}")
def list_resources(
    kind: str, request: Request, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    filters: Dict[str, Any] = dict(request.query_params)
    if "external" in filters:
        filters["external"] = filters["external"].lower() == "true"
    return [services.serialize(db, kind, row) for row in services.list_logic(db, settings, kind, filters)]


@provider_router.get("/{kind}/{resource_id}")
def get_resource(
    kind: str, resource_id: str, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    return services.serialize(db, kind, services.get_logic(db, settings, kind, resource_id))


@provider_router.delete("/{kind}/{resource_id}", status_code=202)
def delete_resource(
    kind: str, resource_id: str, db: Session = Depends(get_db), settings: ProviderSettings = Depends(get_settings)
):
    services.delete_logic(db, settings, kind, resource_id)
    return {"message": f"{kind} {resource_id} deletion initiated"}


# ============================================================================
# App
# ============================================================================


def create_app(session_factory, settings: Optional[ProviderSettings] = None) -> FastAPI:
    app = FastAPI(
        title="Convergence Harness Simulator",
        description="Object store and cloud provider simulator for local harness runs",
        version="1.0.0",
    )
    app.state.session_factory = session_factory
    app.state.settings = settings or ProviderSettings()

    @app.exception_handler(ResourceNotFound)
    async def not_found_handler(request: Request, exc: ResourceNotFound):
        return _error(404, exc)

    @app.exception_handler(ResourceConflict)
    async def conflict_handler(request: Request, exc: ResourceConflict):
        return _error(409, exc)

    @app.exception_handler(InvalidRequest)
    async def invalid_handler(request: Request, exc: InvalidRequest):
        return _error(400, exc)

    @app.middleware("http")
    async def prometheus_middleware(request: Request, call_next):
        METRICS["api_requests"].labels(method=request.method, endpoint=request.url.path).inc()
        start = time.time()
        response = await call_next(request)
        logger.debug(
            "%s %s -> %d (%.1fms)",
            request.method, request.url.path, response.status_code, (time.time() - start) * 1000,
        )
        return response

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(store_router)
    app.include_router(provider_router)
    return app


def _error(status_code: int, exc: Exception):
    logger.info("provider rejected request (%d): %s", status_code, exc)
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})
