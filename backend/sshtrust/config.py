"""
sshtrust Configuration
Runtime settings from the environment and the host topology from YAML
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, validator
from pydantic_settings import BaseSettings

from .distributor import AuthorizeRule, KnownHostsRule, TrustConfig
from .models import CatalogIdentifier, KeyConfig, KeyFamily
from .orchestrator import ExportMode, HostKeyExport, HostNode, KeyExport

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """Process-wide settings (``SSHTRUST_*`` environment variables or ``.env``)"""

    catalog_url: str = Field(
        default="file:///var/cache/sshtrust/exported_keys.ini",
        description="memory://, file:///path, or a SQLAlchemy database URL",
    )
    topology_file: str = "/etc/sshtrust/topology.yml"
    state_dir: str = "/var/lib/sshtrust"  # per-host managed-file manifests
    log_level: str = "INFO"
    keygen_timeout: int = 60  # seconds
    max_rounds: int = 5

    @validator("log_level")
    def log_level_must_be_known(cls, v):
        v = v.upper()
        if v not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return v

    @validator("max_rounds")
    def max_rounds_allows_fixpoint(cls, v):
        if v < 2:
            raise ValueError("max_rounds must be at least 2")
        return v

    @validator("keygen_timeout")
    def keygen_timeout_positive(cls, v):
        if v <= 0:
            raise ValueError("keygen_timeout must be positive")
        return v

    class Config:
        env_file = ".env"
        env_prefix = "SSHTRUST_"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings"""
    return Settings()


# ---------------------------------------------------------------------------
# Topology
# ---------------------------------------------------------------------------


class TopologyError(ValueError):
    """Raised when the topology file cannot be loaded or validated."""


def _check_selectors(v: List[str]) -> List[str]:
    if not v:
        raise ValueError("at least one selector is required")
    for selector in v:
        if not any(ch in selector for ch in "*?["):
            CatalogIdentifier.parse(selector)
    return v


class KeyExportSpec(BaseModel):
    user: str
    family: KeyFamily = KeyFamily.ED25519
    directory: Optional[str] = None
    mode: ExportMode = ExportMode.RECORD

    def to_export(self) -> KeyExport:
        key = KeyConfig(family=self.family, directory=Path(self.directory) if self.directory else None)
        return KeyExport(user=self.user, key=key, mode=self.mode)


class HostKeySpec(BaseModel):
    family: KeyFamily = KeyFamily.ED25519
    path: Optional[str] = None
    mode: ExportMode = ExportMode.RECORD

    def to_export(self) -> HostKeyExport:
        return HostKeyExport(family=self.family, path=self.path, mode=self.mode)


class AuthorizeSpec(BaseModel):
    user: str
    selectors: List[str]
    target_file: Optional[str] = None
    options: Optional[str] = None

    @validator("selectors")
    def selectors_valid(cls, v):
        return _check_selectors(v)

    def to_rule(self) -> AuthorizeRule:
        return AuthorizeRule(
            user=self.user,
            selectors=tuple(self.selectors),
            target_file=self.target_file,
            options=self.options,
        )


class KnownHostsSpec(BaseModel):
    target_file: str
    selectors: List[str]

    @validator("selectors")
    def selectors_valid(cls, v):
        return _check_selectors(v)

    def to_rule(self) -> KnownHostsRule:
        return KnownHostsRule(target_file=self.target_file, selectors=tuple(self.selectors))


class HostSpec(BaseModel):
    name: str
    cluster: Optional[str] = None
    exports: List[KeyExportSpec] = Field(default_factory=list)
    host_keys: List[HostKeySpec] = Field(default_factory=list)
    authorize: List[AuthorizeSpec] = Field(default_factory=list)
    known_hosts: List[KnownHostsSpec] = Field(default_factory=list)

    def to_node(self) -> HostNode:
        cluster = self.cluster or self.name
        return HostNode(
            name=self.name,
            cluster=cluster,
            exports=tuple(e.to_export() for e in self.exports),
            host_keys=tuple(h.to_export() for h in self.host_keys),
            trust=TrustConfig(
                authorize=tuple(a.to_rule() for a in self.authorize),
                known_hosts=tuple(k.to_rule() for k in self.known_hosts),
            ),
        )


class Topology(BaseModel):
    """Validated contents of a topology file."""

    catalog_url: Optional[str] = None
    hosts: List[HostSpec]

    @validator("hosts")
    def host_names_unique(cls, v):
        names = [h.name for h in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate host names: {', '.join(duplicates)}")
        return v

    def nodes(self) -> List[HostNode]:
        return [h.to_node() for h in self.hosts]


def parse_topology(data: dict) -> Topology:
    """Validate an already-loaded topology mapping."""
    if not isinstance(data, dict):
        raise TopologyError("Topology must be a mapping with a 'hosts' list")
    try:
        return Topology(**data)
    except (ValidationError, ValueError) as e:
        raise TopologyError(f"Invalid topology: {e}") from e


def load_topology(path: Union[str, Path]) -> Topology:
    """
    Load and validate a YAML topology file.

    Raises:
        TopologyError: Missing file, YAML syntax error, or validation failure
    """
    topology_path = Path(path)
    try:
        with open(topology_path) as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise TopologyError(f"Topology file not found: {topology_path}") from e
    except yaml.YAMLError as e:
        raise TopologyError(f"Cannot parse {topology_path}: {e}") from e

    topology = parse_topology(data)
    logger.debug("Loaded %d host(s) from %s", len(topology.hosts), topology_path)
    return topology


__all__ = [
    "Settings",
    "get_settings",
    "TopologyError",
    "Topology",
    "parse_topology",
    "load_topology",
]
