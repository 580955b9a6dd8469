"""Reconciliation passes and the convergence loop.

A pass on one host runs its stages strictly in order:

    generation -> parsing -> publish -> lookup -> render -> apply

Hosts only ever see each other through the export catalog, so a consumer
that passes before its producer sees nothing and renders nothing for it.
The next round picks it up. ``converge`` keeps running rounds until a round
(after at least two) changes nothing.

Each host's managed files are remembered between passes (in memory, or as
``<state_dir>/<host>.json`` when a state directory is given) so that lines
in files a host's trust config stopped naming are removed too.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .applier import ApplyResult, FileTrustApplier, ManagedFile, load_manifest, save_manifest
from .catalog.base import ExportCatalog, resolve_snapshot
from .distributor import TrustConfig, TrustDistributor, pending_identifiers
from .exceptions import ErrorKind, MalformedKeyLineError, SSHTrustError
from .key_parser import read_key_file
from .key_store import KeyMaterialStore
from .models import CatalogIdentifier, CatalogValue, KeyConfig, KeyFamily, KeyPath, KeyRecord

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    """Ordered stages of one reconciliation pass."""

    GENERATION = "generation"
    PARSING = "parsing"
    PUBLISH = "publish"
    LOOKUP = "lookup"
    RENDER = "render"
    APPLY = "apply"


class ExportMode(str, Enum):
    """How a key is published: parsed record, or a path the consumer reads."""

    RECORD = "record"
    PATH = "path"


@dataclass(frozen=True)
class KeyExport:
    """An account key pair this host owns and publishes."""

    user: str
    key: KeyConfig = field(default_factory=KeyConfig)
    mode: ExportMode = ExportMode.RECORD


@dataclass(frozen=True)
class HostKeyExport:
    """A host key this host publishes; never generated here."""

    family: KeyFamily = KeyFamily.ED25519
    path: str | None = None
    mode: ExportMode = ExportMode.RECORD

    @property
    def public_key_path(self) -> Path:
        if self.path:
            return Path(self.path)
        return Path(f"/etc/ssh/ssh_host_{KeyFamily(self.family).value.replace('-', '_')}_key.pub")


@dataclass(frozen=True)
class HostNode:
    """One participating host."""

    name: str
    cluster: str
    exports: tuple[KeyExport, ...] = ()
    host_keys: tuple[HostKeyExport, ...] = ()
    trust: TrustConfig = field(default_factory=TrustConfig)


@dataclass
class PassReport:
    """Outcome of one pass on one host."""

    host: str
    dry_run: bool = False
    published: int = 0
    pending: list[CatalogIdentifier] = field(default_factory=list)
    unresolved: dict[CatalogIdentifier, SSHTrustError] = field(default_factory=dict)
    would_generate: list[Path] = field(default_factory=list)
    applied: ApplyResult | None = None
    failed_stage: Stage | None = None
    error: Exception | None = None
    failed_identifier: str | None = None

    @property
    def ok(self) -> bool:
        return self.failed_stage is None

    @property
    def error_kind(self) -> ErrorKind | None:
        return getattr(self.error, "kind", None)

    @property
    def changes(self) -> int:
        applied = self.applied.changes if self.applied else 0
        return self.published + applied


@dataclass
class ConvergenceReport:
    """Per-round pass reports of a convergence run."""

    rounds: list[list[PassReport]] = field(default_factory=list)
    converged: bool = False

    @property
    def last_round(self) -> list[PassReport]:
        return self.rounds[-1] if self.rounds else []

    @property
    def failures(self) -> list[PassReport]:
        return [r for r in self.last_round if not r.ok]

    @property
    def pending(self) -> list[CatalogIdentifier]:
        found: list[CatalogIdentifier] = []
        for report in self.last_round:
            found.extend(i for i in report.pending if i not in found)
        return found


class _StageFailed(Exception):
    def __init__(self, stage: Stage, error: Exception, identifier: str | None = None) -> None:
        super().__init__(str(error))
        self.stage = stage
        self.error = error
        self.identifier = identifier


class ConvergenceOrchestrator:
    """Runs reconciliation passes for a set of hosts against one catalog."""

    def __init__(
        self,
        catalog: ExportCatalog,
        nodes: list[HostNode] | tuple[HostNode, ...] = (),
        store: KeyMaterialStore | None = None,
        distributor: TrustDistributor | None = None,
        applier: FileTrustApplier | None = None,
        state_dir: str | Path | None = None,
    ) -> None:
        self.catalog = catalog
        self.nodes = list(nodes)
        self.store = store or KeyMaterialStore()
        self.distributor = distributor or TrustDistributor()
        self.applier = applier or FileTrustApplier()
        self.state_dir = Path(state_dir) if state_dir else None
        self._managed: dict[str, set[ManagedFile]] = {}

    def node(self, name: str) -> HostNode:
        for node in self.nodes:
            if node.name == name:
                return node
        raise KeyError(name)

    # -- managed files ----------------------------------------------------------

    def manifest_path(self, node: HostNode) -> Path | None:
        return self.state_dir / f"{node.name}.json" if self.state_dir else None

    def managed_files(self, node: HostNode) -> set[ManagedFile]:
        """Files earlier passes on ``node`` wrote managed lines to."""
        path = self.manifest_path(node)
        if path is None:
            return set(self._managed.get(node.name, ()))
        return load_manifest(path)

    def _remember(self, node: HostNode, files: set[ManagedFile]) -> None:
        path = self.manifest_path(node)
        if path is None:
            self._managed[node.name] = set(files)
        else:
            save_manifest(path, files)

    # -- stages ---------------------------------------------------------------

    def _generate(self, node: HostNode, report: PassReport) -> list[tuple[KeyExport, KeyConfig]]:
        ready = []
        for export in node.exports:
            identifier = CatalogIdentifier.user(export.user, node.cluster)
            try:
                if report.dry_run:
                    config = self.store.resolve_config(export.user, export.key)
                    if not config.public_key_path.exists():
                        logger.info("[dry-run] Would generate %s", config.public_key_path)
                        report.would_generate.append(config.public_key_path)
                        continue
                else:
                    config = self.store.ensure_key_pair(export.user, export.key)
            except SSHTrustError as exc:
                raise _StageFailed(Stage.GENERATION, exc, str(identifier))
            ready.append((export, config))
        return ready

    def _parse(
        self, node: HostNode, ready: list[tuple[KeyExport, KeyConfig]]
    ) -> dict[CatalogIdentifier, CatalogValue]:
        values: dict[CatalogIdentifier, CatalogValue] = {}
        sources: list[tuple[CatalogIdentifier, Path, ExportMode]] = [
            (CatalogIdentifier.user(export.user, node.cluster), config.public_key_path, export.mode)
            for export, config in ready
        ]
        sources.extend(
            (CatalogIdentifier.host(hk.family, node.cluster), hk.public_key_path, hk.mode)
            for hk in node.host_keys
        )

        for identifier, path, mode in sources:
            try:
                record: KeyRecord = read_key_file(path)
            except SSHTrustError as exc:
                raise _StageFailed(Stage.PARSING, exc, str(identifier))
            values[identifier] = KeyPath(str(path)) if mode == ExportMode.PATH else record
        return values

    def _publish(self, values: dict[CatalogIdentifier, CatalogValue], report: PassReport) -> None:
        for identifier, value in values.items():
            try:
                if report.dry_run:
                    if self.catalog.lookup(identifier) != value:
                        logger.info("[dry-run] Would publish %s", identifier)
                        report.published += 1
                elif self.catalog.publish(identifier, value):
                    report.published += 1
            except SSHTrustError as exc:
                raise _StageFailed(Stage.PUBLISH, exc, str(identifier))

    def _lookup(self, node: HostNode, report: PassReport) -> dict[CatalogIdentifier, KeyRecord]:
        try:
            snapshot = self.catalog.snapshot()
            pending = pending_identifiers(node.trust, snapshot)
            corrupt = self._corrupt_entries(pending)
        except SSHTrustError as exc:
            raise _StageFailed(Stage.LOOKUP, exc, exc.identifier)

        resolved, report.unresolved = resolve_snapshot(snapshot, reader=self.store.read_public_key)
        report.unresolved.update(corrupt)
        report.pending = [i for i in pending if i not in corrupt]

        for identifier in report.pending:
            logger.info("%s: %s not published yet", node.name, identifier)
        for identifier, exc in corrupt.items():
            logger.warning("%s: catalog entry for %s is unreadable: %s", node.name, identifier, exc)
        return resolved

    def _corrupt_entries(self, identifiers: list[CatalogIdentifier]) -> dict[CatalogIdentifier, SSHTrustError]:
        # snapshot() leaves out entries whose stored value does not parse
        corrupt: dict[CatalogIdentifier, SSHTrustError] = {}
        for identifier in identifiers:
            try:
                self.catalog.lookup(identifier)
            except MalformedKeyLineError as exc:
                corrupt[identifier] = exc
        return corrupt

    def _render(self, node: HostNode, resolved: dict[CatalogIdentifier, KeyRecord]) -> set:
        try:
            previous = self.applier.current(node.trust, also=self.managed_files(node))
        except SSHTrustError as exc:
            raise _StageFailed(Stage.RENDER, exc, exc.identifier)
        except (OSError, ValueError) as exc:
            raise _StageFailed(Stage.RENDER, exc)
        return self.distributor.render(resolved, node.trust, previous)

    def _apply(self, node: HostNode, artifacts: set, report: PassReport) -> None:
        try:
            report.applied = self.applier.apply(artifacts, dry_run=report.dry_run)
            if not report.dry_run:
                self._remember(node, self.applier.managed_files(node.trust))
        except (SSHTrustError, OSError) as exc:
            raise _StageFailed(Stage.APPLY, exc, getattr(exc, "identifier", None))

    # -- passes ---------------------------------------------------------------

    def run_pass(self, node: HostNode, *, dry_run: bool = False) -> PassReport:
        """Run one reconciliation pass on ``node``; failures are reported, not raised."""
        report = PassReport(host=node.name, dry_run=dry_run)
        try:
            ready = self._generate(node, report)
            values = self._parse(node, ready)
            self._publish(values, report)
            resolved = self._lookup(node, report)
            artifacts = self._render(node, resolved)
            self._apply(node, artifacts, report)
        except _StageFailed as failed:
            report.failed_stage = failed.stage
            report.error = failed.error
            report.failed_identifier = failed.identifier
            logger.error(
                "Pass on %s failed at %s stage%s: %s",
                node.name,
                failed.stage.value,
                f" ({failed.identifier})" if failed.identifier else "",
                failed.error,
            )
            return report

        logger.info("Pass on %s finished with %d change(s)", node.name, report.changes)
        return report

    def run_round(self, *, dry_run: bool = False) -> list[PassReport]:
        """One pass per host, in node order."""
        return [self.run_pass(node, dry_run=dry_run) for node in self.nodes]

    def converge(self, max_rounds: int = 5) -> ConvergenceReport:
        """Repeat rounds until one (after at least two) makes no change and no host fails."""
        if max_rounds < 2:
            raise ValueError("max_rounds must be at least 2")

        report = ConvergenceReport()
        for number in range(1, max_rounds + 1):
            passes = self.run_round()
            report.rounds.append(passes)
            changes = sum(p.changes for p in passes)
            failed = [p.host for p in passes if not p.ok]
            logger.info("Round %d: %d change(s), %d failed host(s)", number, changes, len(failed))
            if number >= 2 and changes == 0 and not failed:
                report.converged = True
                return report

        logger.warning("No fixpoint after %d rounds", max_rounds)
        return report


__all__ = [
    "Stage",
    "ExportMode",
    "KeyExport",
    "HostKeyExport",
    "HostNode",
    "PassReport",
    "ConvergenceReport",
    "ConvergenceOrchestrator",
]
