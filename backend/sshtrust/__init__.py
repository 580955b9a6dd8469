"""
sshtrust

Bootstraps mutual SSH trust between a backup repository host and its
database hosts. Each host generates its own key pair, publishes the public
key to a shared export catalog, and renders authorized_keys / known_hosts
entries from what its peers published. Repeated passes converge.

Module Architecture:
    sshtrust/
    ├── __init__.py          # This file - public API
    ├── models.py            # Data classes and enums
    ├── exceptions.py        # Error taxonomy
    ├── key_parser.py        # Public key line parsing
    ├── key_store.py         # Key pair generation (ssh-keygen)
    ├── catalog/             # Export catalog backends (memory, file, SQL)
    ├── distributor.py       # Catalog snapshot -> trust artifacts
    ├── applier.py           # Trust artifacts -> authorized_keys / known_hosts
    ├── orchestrator.py      # Reconciliation passes and convergence loop
    ├── config.py            # Settings and YAML topology
    └── cli.py               # click command line

Usage:
    from sshtrust import ConvergenceOrchestrator, get_catalog, load_topology

    topology = load_topology("/etc/sshtrust/topology.yml")
    orchestrator = ConvergenceOrchestrator(get_catalog("memory://"), topology.nodes())
    report = orchestrator.converge(max_rounds=5)

Security Notes:
    - Private key content is never read, logged or published
    - Only lines carrying the sshtrust marker are ever rewritten
"""

from .applier import ApplyResult, FileTrustApplier, ManagedFile
from .catalog import ExportCatalog, FileCatalog, InMemoryCatalog, SQLCatalog, get_catalog, resolve_snapshot
from .config import Settings, Topology, TopologyError, get_settings, load_topology, parse_topology
from .distributor import AuthorizeRule, KnownHostsRule, TrustConfig, TrustDistributor, pending_identifiers
from .exceptions import (
    CatalogUnavailableError,
    ErrorKind,
    GenerationFailedError,
    MalformedKeyLineError,
    PathNotFoundError,
    SSHTrustError,
)
from .key_parser import flatten_key_text, parse_key_line, read_key_file
from .key_store import KeyGenerator, KeyMaterialStore, SshKeygenGenerator
from .models import (
    AuthorizedKeyArtifact,
    CatalogIdentifier,
    Ensure,
    KeyConfig,
    KeyFamily,
    KeyKind,
    KeyPath,
    KeyRecord,
    KnownHostArtifact,
    key_path,
)
from .orchestrator import (
    ConvergenceOrchestrator,
    ConvergenceReport,
    ExportMode,
    HostKeyExport,
    HostNode,
    KeyExport,
    PassReport,
    Stage,
)

__version__ = "0.1.0"

__all__ = [
    # Models
    "KeyFamily",
    "KeyRecord",
    "KeyPath",
    "KeyConfig",
    "KeyKind",
    "CatalogIdentifier",
    "Ensure",
    "AuthorizedKeyArtifact",
    "KnownHostArtifact",
    "key_path",
    # Exceptions
    "ErrorKind",
    "SSHTrustError",
    "MalformedKeyLineError",
    "PathNotFoundError",
    "GenerationFailedError",
    "CatalogUnavailableError",
    # Parsing and key material
    "parse_key_line",
    "flatten_key_text",
    "read_key_file",
    "KeyGenerator",
    "SshKeygenGenerator",
    "KeyMaterialStore",
    # Catalog
    "ExportCatalog",
    "InMemoryCatalog",
    "FileCatalog",
    "SQLCatalog",
    "get_catalog",
    "resolve_snapshot",
    # Distribution
    "AuthorizeRule",
    "KnownHostsRule",
    "TrustConfig",
    "TrustDistributor",
    "pending_identifiers",
    "ApplyResult",
    "FileTrustApplier",
    "ManagedFile",
    # Orchestration
    "Stage",
    "ExportMode",
    "KeyExport",
    "HostKeyExport",
    "HostNode",
    "PassReport",
    "ConvergenceReport",
    "ConvergenceOrchestrator",
    # Configuration
    "Settings",
    "get_settings",
    "Topology",
    "TopologyError",
    "load_topology",
    "parse_topology",
]
