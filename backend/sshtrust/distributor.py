"""
Trust Distributor

Turns a snapshot of the export catalog into the trust artifacts a host
should have: authorized_keys grants for local accounts and known_hosts pins
for peer host keys.

Rendering is a pure function of (snapshot, local trust config, previously
rendered artifacts). It performs no I/O; reading the catalog and writing the
artifacts belong to the orchestrator and the applier.

Garbage Collection:
    Every previously rendered artifact that is not rendered again comes back
    with ``ensure=absent``. This covers sources that vanished from the
    catalog as well as sources a rule no longer selects.

Usage:
    config = TrustConfig(
        authorize=[AuthorizeRule(user="postgres", selectors=("user:pgbackup@repo*",))],
        known_hosts=[KnownHostsRule(target_file="/var/lib/pgsql/.ssh/known_hosts",
                                    selectors=("host:ed25519@repo*",))],
    )
    artifacts = TrustDistributor().render(resolved_snapshot, config, previous)
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from .models import (
    AuthorizedKeyArtifact,
    CatalogIdentifier,
    CatalogValue,
    Ensure,
    KeyKind,
    KeyRecord,
    KnownHostArtifact,
    TrustArtifact,
)

logger = logging.getLogger(__name__)

# Algorithms that can be placed in authorized_keys/known_hosts for unattended
# sessions. Security-key (sk-*) keys need a physical touch.
RENDERABLE_PREFIXES = ("ssh-", "ecdsa-")

_GLOB_CHARS = set("*?[")


def is_glob(selector: str) -> bool:
    return any(ch in _GLOB_CHARS for ch in selector)


def _matches(selectors: Iterable[str], identifier: CatalogIdentifier) -> bool:
    text = str(identifier)
    return any(fnmatch.fnmatchcase(text, pattern) for pattern in selectors)


@dataclass(frozen=True)
class AuthorizeRule:
    """
    Grant selected user keys access to a local account.

    Attributes:
        user: Local account receiving the grant
        selectors: fnmatch globs over catalog identifier strings
        target_file: authorized_keys path; None means ``~user/.ssh/authorized_keys``
        options: Restrictions written in front of each granted key
    """

    user: str
    selectors: Tuple[str, ...] = ()
    target_file: Optional[str] = None
    options: Optional[str] = None

    def matches(self, identifier: CatalogIdentifier) -> bool:
        return identifier.kind == KeyKind.USER and _matches(self.selectors, identifier)


@dataclass(frozen=True)
class KnownHostsRule:
    """Pin selected host keys in ``target_file``; the host pattern is the cluster id."""

    target_file: str
    selectors: Tuple[str, ...] = ()

    def matches(self, identifier: CatalogIdentifier) -> bool:
        return identifier.kind == KeyKind.HOST and _matches(self.selectors, identifier)


@dataclass(frozen=True)
class TrustConfig:
    """Local trust configuration of one host."""

    authorize: Tuple[AuthorizeRule, ...] = field(default_factory=tuple)
    known_hosts: Tuple[KnownHostsRule, ...] = field(default_factory=tuple)

    @property
    def selectors(self) -> List[str]:
        found: List[str] = []
        for rule in (*self.authorize, *self.known_hosts):
            for selector in rule.selectors:
                if selector not in found:
                    found.append(selector)
        return found


def is_renderable(value: CatalogValue) -> bool:
    """True for parsed keys whose algorithm can serve unattended sessions."""
    return isinstance(value, KeyRecord) and value.algorithm.startswith(RENDERABLE_PREFIXES)


class TrustDistributor:
    """Deterministic renderer of trust artifacts."""

    def render(
        self,
        snapshot: Mapping[CatalogIdentifier, CatalogValue],
        config: TrustConfig,
        previous: Iterable[TrustArtifact] = (),
    ) -> Set[TrustArtifact]:
        """
        Render the artifacts ``config`` selects from ``snapshot``.

        Args:
            snapshot: Catalog entries with path references already resolved;
                unresolved KeyPath values are skipped
            config: Local trust rules
            previous: Artifacts rendered by an earlier pass

        Returns:
            Present artifacts plus absent markers for previous artifacts
            whose slot is no longer rendered
        """
        rendered: Dict[tuple, TrustArtifact] = {}

        for identifier in sorted(snapshot):
            value = snapshot[identifier]
            if not is_renderable(value):
                logger.debug("Skipping non-renderable catalog entry %s", identifier)
                continue

            for rule in config.authorize:
                if not rule.matches(identifier):
                    continue
                artifact = AuthorizedKeyArtifact(
                    source=identifier,
                    user=rule.user,
                    algorithm=value.algorithm,
                    material=value.material,
                    target_file=rule.target_file,
                    options=rule.options,
                )
                if artifact.slot in rendered:
                    logger.warning(
                        "Multiple rules grant %s to %s; keeping the first", identifier, rule.user
                    )
                    continue
                rendered[artifact.slot] = artifact

            for rule in config.known_hosts:
                if not rule.matches(identifier):
                    continue
                artifact = KnownHostArtifact(
                    source=identifier,
                    target_file=rule.target_file,
                    host_pattern=identifier.cluster,
                    algorithm=value.algorithm,
                    material=value.material,
                )
                rendered.setdefault(artifact.slot, artifact)

        artifacts: Set[TrustArtifact] = set(rendered.values())
        for old in previous:
            if old.slot not in rendered and old.ensure == Ensure.PRESENT:
                logger.info("Source %s no longer rendered; marking %s absent", old.source, old.slot[0])
                artifacts.add(old.absent())

        return artifacts


def pending_identifiers(
    config: TrustConfig, snapshot: Mapping[CatalogIdentifier, CatalogValue]
) -> List[CatalogIdentifier]:
    """
    Exact selectors with no readable entry in ``snapshot``.

    A pending identifier means "not yet converged", not a failure. Glob
    selectors never count as pending.
    """
    pending: List[CatalogIdentifier] = []
    for selector in config.selectors:
        if is_glob(selector):
            continue
        try:
            identifier = CatalogIdentifier.parse(selector)
        except ValueError:
            logger.warning("Selector %r is neither a glob nor a catalog identifier", selector)
            continue
        if identifier not in snapshot:
            pending.append(identifier)
    return pending


__all__ = [
    "RENDERABLE_PREFIXES",
    "AuthorizeRule",
    "KnownHostsRule",
    "TrustConfig",
    "TrustDistributor",
    "is_glob",
    "is_renderable",
    "pending_identifiers",
]
