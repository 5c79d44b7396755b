"""
Harness Configuration

Everything a scenario needs to reach the object store and the provider,
collected into one explicit object that is passed to every component.
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from .errors import ConfigError

DEFAULT_WORKERS_CIDR = "10.250.0.0/16"


@dataclass
class WaitTier:
    """Grace period / poll cadence / hard ceiling for one kind of wait (seconds)."""

    early_timeout: float
    poll_interval: float
    absolute_timeout: float


@dataclass
class Timeouts:
    creation: WaitTier = field(default_factory=lambda: WaitTier(10, 30, 16 * 60))
    reconcile_trigger: WaitTier = field(default_factory=lambda: WaitTier(10, 30, 5 * 60))
    deletion: WaitTier = field(default_factory=lambda: WaitTier(0, 10, 16 * 60))
    bastion: WaitTier = field(default_factory=lambda: WaitTier(60, 120, 10 * 60))

    @classmethod
    def fast(cls, interval: float = 0.05, ceiling: float = 20.0) -> "Timeouts":
        """Tiers for the local simulator, where everything converges in seconds."""
        tier = lambda: WaitTier(0, interval, ceiling)
        return cls(creation=tier(), reconcile_trigger=tier(), deletion=tier(), bastion=tier())


@dataclass
class HarnessConfig:
    store_url: str
    provider_url: str
    auth_url: str = ""
    domain_name: str = ""
    tenant_name: str = ""
    user_name: str = ""
    password: str = ""
    region: str = ""
    floating_pool_name: str = ""
    workers_cidr: str = DEFAULT_WORKERS_CIDR
    timeouts: Timeouts = field(default_factory=Timeouts)
    consistency_grace: float = 30.0
    grace_poll_interval: float = 2.0
    max_fetch_errors: int = 5
    bastion_ssh_port: int = 22
    bastion_closed_port: int = 42
    open_dial_timeout: float = 60.0
    closed_dial_timeout: float = 3.0
    bastion_settle_seconds: float = 10.0
    request_timeout: float = 30.0

    REQUIRED = (
        "store_url",
        "provider_url",
        "auth_url",
        "domain_name",
        "floating_pool_name",
        "password",
        "region",
        "tenant_name",
        "user_name",
    )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "HarnessConfig":
        env = os.environ if environ is None else environ
        config = cls(
            store_url=env.get("HARNESS_STORE_URL", ""),
            provider_url=env.get("HARNESS_PROVIDER_URL", ""),
            auth_url=env.get("OS_AUTH_URL", ""),
            domain_name=env.get("OS_DOMAIN_NAME", ""),
            tenant_name=env.get("OS_TENANT_NAME", ""),
            user_name=env.get("OS_USER_NAME", ""),
            password=env.get("OS_PASSWORD", ""),
            region=env.get("OS_REGION", ""),
            floating_pool_name=env.get("OS_FLOATING_POOL_NAME", ""),
            workers_cidr=env.get("HARNESS_WORKERS_CIDR", DEFAULT_WORKERS_CIDR),
        )
        try:
            config.consistency_grace = float(env.get("HARNESS_CONSISTENCY_GRACE", config.consistency_grace))
            config.max_fetch_errors = int(env.get("HARNESS_MAX_FETCH_ERRORS", config.max_fetch_errors))
            config.bastion_ssh_port = int(env.get("HARNESS_BASTION_SSH_PORT", config.bastion_ssh_port))
        except ValueError as e:
            raise ConfigError(f"invalid numeric setting: {e}") from e
        return config

    def validate(self) -> "HarnessConfig":
        for name in self.REQUIRED:
            if not getattr(self, name):
                raise ConfigError(f"{name} is not specified")
        return self

    def secret_data(self) -> Dict[str, str]:
        """Credential payload for the cloudprovider secret."""
        return {
            "authURL": self.auth_url,
            "domainName": self.domain_name,
            "password": self.password,
            "region": self.region,
            "tenantName": self.tenant_name,
            "username": self.user_name,
        }
