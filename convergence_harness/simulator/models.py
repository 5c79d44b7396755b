# file: models.py

import time

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, UniqueConstraint, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

Base = declarative_base()

# ============================================================================
# Declarative object store
# ============================================================================


class ResourceVersionCounter(Base):
    __tablename__ = "resource_version_counter"
    id = Column(Integer, primary_key=True)
    current = Column(Integer, nullable=False)


class StoredObject(Base):
    __tablename__ = "objects"
    __table_args__ = (UniqueConstraint("kind", "namespace", "name"),)
    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String, nullable=False)
    namespace = Column(String, nullable=False, default="")
    name = Column(String, nullable=False)
    resource_version = Column(Integer, nullable=False)
    generation = Column(Integer, nullable=False, default=1)
    annotations = Column(JSON, default=dict)
    finalizers = Column(JSON, default=list)
    spec = Column(JSON, default=dict)
    data = Column(JSON, default=dict)
    status = Column(JSON, default=dict)
    deletion_timestamp = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# Provider resources
# ============================================================================

# Lifecycle: BUILD -> ACTIVE -> PENDING_DELETE -> (row removed)


class Lifecycle:
    status = Column(String, default="BUILD")
    status_changed_at = Column(Float, nullable=False, default=time.time)


class Network(Lifecycle, Base):
    __tablename__ = "networks"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    external = Column(Boolean, default=False)
    created_at = Column(DateTime, server_default=func.now())


class Subnet(Lifecycle, Base):
    __tablename__ = "subnets"
    id = Column(String, primary_key=True)
    network_id = Column(String, ForeignKey("networks.id"), nullable=False)
    name = Column(String, nullable=False)
    cidr = Column(String, nullable=False)
    gateway_ip = Column(String, nullable=True)
    allocation_pools = Column(JSON, default=list)
    ip_version = Column(Integer, default=4)
    created_at = Column(DateTime, server_default=func.now())


class Router(Lifecycle, Base):
    __tablename__ = "routers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    admin_state_up = Column(Boolean, default=True)
    external_gateway_network_id = Column(String, nullable=True)
    external_fixed_ips = Column(JSON, default=list)
    created_at = Column(DateTime, server_default=func.now())


class RouterInterface(Base):
    __tablename__ = "router_interfaces"
    id = Column(Integer, primary_key=True, autoincrement=True)
    router_id = Column(String, ForeignKey("routers.id"), nullable=False)
    subnet_id = Column(String, ForeignKey("subnets.id"), nullable=False)


class SecurityGroup(Lifecycle, Base):
    __tablename__ = "security_groups"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, default="")
    created_at = Column(DateTime, server_default=func.now())


class SecurityGroupRule(Base):
    __tablename__ = "security_group_rules"
    id = Column(String, primary_key=True)
    security_group_id = Column(String, ForeignKey("security_groups.id"), nullable=False)
    direction = Column(String, nullable=False)
    protocol = Column(String, nullable=True)
    port_range_min = Column(Integer, nullable=True)
    port_range_max = Column(Integer, nullable=True)
    remote_ip_prefix = Column(String, nullable=True)
    remote_group_id = Column(String, nullable=True)
    description = Column(String, default="")


class KeyPair(Lifecycle, Base):
    __tablename__ = "keypairs"
    name = Column(String, primary_key=True)
    public_key = Column(String, nullable=False)
    fingerprint = Column(String, nullable=False)


class FloatingIP(Lifecycle, Base):
    __tablename__ = "floating_ips"
    id = Column(String, primary_key=True)
    floating_network_id = Column(String, ForeignKey("networks.id"), nullable=False)
    floating_ip_address = Column(String, nullable=False)
    description = Column(String, default="")
    server_id = Column(String, nullable=True)


class Server(Lifecycle, Base):
    __tablename__ = "servers"
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    network_id = Column(String, ForeignKey("networks.id"), nullable=False)
    fixed_ip = Column(String, nullable=True)
    security_group_ids = Column(JSON, default=list)
    key_name = Column(String, nullable=True)
    user_data = Column(String, default="")
    created_at = Column(DateTime, server_default=func.now())


# ============================================================================
# Database Configuration
# ============================================================================


def make_session_factory(url: str = "sqlite://", echo: bool = False):
    """
    Create the engine and tables and return a session factory.

    A bare "sqlite://" URL is an in-memory database shared by every thread
    through a single connection; file URLs get a normal pool.
    """
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    if url in ("sqlite://", "sqlite:///:memory:"):
        engine = create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    else:
        engine = create_engine(url, echo=echo, connect_args=connect_args)
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
