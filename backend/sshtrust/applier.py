"""
Trust Artifact Applier

Writes rendered trust artifacts into ``authorized_keys`` and ``known_hosts``
files and reads previously applied artifacts back.

Managed Lines:
    Every line written here ends with a ``sshtrust:<identifier>`` comment:

        no-pty ssh-ed25519 AAAAC3Nz... sshtrust:user:pgbackup@repo01
        repo01 ssh-ed25519 AAAAC3Nz... sshtrust:host:ed25519@repo01

    Lines without the marker are never modified or removed. A present
    artifact replaces the managed line for the same source, an absent
    artifact deletes it. Files are rewritten atomically and only when their
    content changes.

Managed Files:
    managed_files() lists every file a TrustConfig writes to. Callers keep
    that list between passes (see save_manifest/load_manifest) and hand it
    back to current(), so lines in files that a later config no longer
    names are still read back and can be removed.

Ownership:
    New content is written with the existing file's mode (0600 for new
    authorized_keys, 0644 for new known_hosts). When running as root the
    file is owned by the owner of its directory.
"""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .distributor import TrustConfig
from .exceptions import MalformedKeyLineError, PathNotFoundError
from .key_parser import parse_key_line
from .key_store import default_ssh_directory
from .models import (
    AuthorizedKeyArtifact,
    CatalogIdentifier,
    Ensure,
    KeyRecord,
    KnownHostArtifact,
    TrustArtifact,
)

logger = logging.getLogger(__name__)

MARKER_PREFIX = "sshtrust:"

AUTHORIZED_KEYS = "authorized_keys"
KNOWN_HOSTS = "known_hosts"


def render_line(artifact: TrustArtifact) -> str:
    """Render the managed line for a present artifact."""
    if isinstance(artifact, KnownHostArtifact):
        lead = artifact.host_pattern
    else:
        lead = artifact.options
    parts = [lead, artifact.algorithm, artifact.material, f"{MARKER_PREFIX}{artifact.source}"]
    return " ".join(p for p in parts if p)


def managed_source(line: str) -> Optional[CatalogIdentifier]:
    """Return the source identifier of a managed line, or None for foreign lines."""
    tokens = line.split()
    if not tokens or not tokens[-1].startswith(MARKER_PREFIX):
        return None
    try:
        return CatalogIdentifier.parse(tokens[-1][len(MARKER_PREFIX):])
    except ValueError:
        return None


@dataclass(frozen=True, order=True)
class ManagedFile:
    """A file holding managed lines; ``user`` is the grantee for authorized_keys."""

    kind: str
    path: str
    user: str = ""


def load_manifest(path: Path) -> Set[ManagedFile]:
    """
    Read a managed-file manifest written by save_manifest().

    Returns:
        The recorded files; empty when the manifest does not exist yet

    Raises:
        ValueError: The manifest is not valid JSON or has the wrong shape
    """
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return set()
    try:
        return {ManagedFile(**entry) for entry in data["files"]}
    except (KeyError, TypeError) as e:
        raise ValueError(f"Invalid manifest {path}: {e}") from e


def save_manifest(path: Path, files: Iterable[ManagedFile]) -> None:
    """Atomically write the manifest, creating its directory if needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"files": [asdict(f) for f in sorted(files)]}
    _replace_file(path, json.dumps(data, indent=2) + "\n", 0o600)


def _replace_file(path: Path, content: str, mode: int, owner: Optional[Tuple[int, int]] = None) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
        if owner is not None:
            os.chown(tmp, *owner)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


@dataclass
class ApplyResult:
    """Line-level outcome of one apply() call."""

    added: int = 0
    updated: int = 0
    removed: int = 0
    changed_files: List[Path] = field(default_factory=list)
    dry_run: bool = False

    @property
    def changes(self) -> int:
        return self.added + self.updated + self.removed


class FileTrustApplier:
    """
    Applies trust artifacts to files on the local host.

    Attributes:
        manage_ownership: chown written files to their directory's owner when root
    """

    def __init__(self, manage_ownership: bool = True) -> None:
        self.manage_ownership = manage_ownership

    def target_path(self, artifact: TrustArtifact) -> Path:
        if artifact.target_file:
            return Path(artifact.target_file)
        return self.authorized_keys_path(artifact.user)

    @staticmethod
    def authorized_keys_path(user: str, target_file: Optional[str] = None) -> Path:
        if target_file:
            return Path(target_file)
        return default_ssh_directory(user) / "authorized_keys"

    # -- reading ------------------------------------------------------------

    def _read_lines(self, path: Path) -> List[str]:
        try:
            return path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def _managed_records(self, path: Path) -> List[Tuple[CatalogIdentifier, KeyRecord]]:
        records = []
        for line in self._read_lines(path):
            source = managed_source(line)
            if source is None:
                continue
            try:
                records.append((source, parse_key_line(line)))
            except MalformedKeyLineError:
                logger.warning("Unreadable managed line for %s in %s", source, path)
        return records

    def _read_artifacts(self, kind: str, path: Path, user: str, target_file: Optional[str]) -> Set[TrustArtifact]:
        artifacts: Set[TrustArtifact] = set()
        for source, record in self._managed_records(path):
            if kind == AUTHORIZED_KEYS:
                artifacts.add(
                    AuthorizedKeyArtifact(
                        source=source,
                        user=user,
                        algorithm=record.algorithm,
                        material=record.material,
                        target_file=target_file,
                        options=record.options,
                    )
                )
            else:
                artifacts.add(
                    KnownHostArtifact(
                        source=source,
                        target_file=target_file,
                        host_pattern=record.options or source.cluster,
                        algorithm=record.algorithm,
                        material=record.material,
                    )
                )
        return artifacts

    def managed_files(self, config: TrustConfig) -> Set[ManagedFile]:
        """
        Files ``config`` writes to, with default paths resolved.

        Raises:
            PathNotFoundError: A default authorized_keys path belongs to an
                account that does not exist
        """
        files = {
            ManagedFile(AUTHORIZED_KEYS, str(self.authorized_keys_path(rule.user, rule.target_file)), rule.user)
            for rule in config.authorize
        }
        files.update(ManagedFile(KNOWN_HOSTS, rule.target_file) for rule in config.known_hosts)
        return files

    def current(self, config: TrustConfig, also: Iterable[ManagedFile] = ()) -> Set[TrustArtifact]:
        """
        Read back the managed artifacts in every file ``config`` targets.

        Args:
            config: Trust config of this host
            also: Files written by earlier passes. Those no longer named by
                ``config`` are read too, so their lines come back as
                artifacts nothing renders any more.

        Raises:
            PathNotFoundError: A default authorized_keys path belongs to an
                account that does not exist
        """
        artifacts: Set[TrustArtifact] = set()

        for rule in config.authorize:
            path = self.authorized_keys_path(rule.user, rule.target_file)
            artifacts |= self._read_artifacts(AUTHORIZED_KEYS, path, rule.user, rule.target_file)

        for rule in config.known_hosts:
            artifacts |= self._read_artifacts(KNOWN_HOSTS, Path(rule.target_file), "", rule.target_file)

        covered = {(f.kind, f.path) for f in self.managed_files(config)}
        for managed in sorted(also):
            if (managed.kind, managed.path) in covered:
                continue
            found = self._read_artifacts(managed.kind, Path(managed.path), managed.user, managed.path)
            if found:
                logger.info("%s is no longer configured; %d managed line(s) left", managed.path, len(found))
            artifacts |= found

        return artifacts

    # -- writing ------------------------------------------------------------

    def apply(self, artifacts: Iterable[TrustArtifact], dry_run: bool = False) -> ApplyResult:
        """
        Bring target files in line with ``artifacts``.

        Args:
            artifacts: Output of TrustDistributor.render()
            dry_run: Compute the changes without writing anything

        Returns:
            ApplyResult with per-line counts

        Raises:
            PathNotFoundError: A target file's directory does not exist
            OSError: A target file could not be written
        """
        result = ApplyResult(dry_run=dry_run)

        by_file: Dict[Path, List[TrustArtifact]] = {}
        for artifact in artifacts:
            by_file.setdefault(self.target_path(artifact), []).append(artifact)

        for path in sorted(by_file):
            wanted: Dict[CatalogIdentifier, str] = {}
            unwanted: Set[CatalogIdentifier] = set()
            for artifact in sorted(by_file[path], key=lambda a: (str(a.source), a.ensure.value)):
                if artifact.ensure == Ensure.PRESENT:
                    wanted[artifact.source] = render_line(artifact)
                else:
                    unwanted.add(artifact.source)
            unwanted -= set(wanted)

            if self._apply_file(path, wanted, unwanted, result, default_mode=self._default_mode(by_file[path])):
                result.changed_files.append(path)

        if result.changes:
            logger.info(
                "%s trust artifacts: %d added, %d updated, %d removed in %d file(s)",
                "Would apply" if dry_run else "Applied",
                result.added,
                result.updated,
                result.removed,
                len(result.changed_files),
            )
        return result

    @staticmethod
    def _default_mode(artifacts: List[TrustArtifact]) -> int:
        if any(isinstance(a, AuthorizedKeyArtifact) for a in artifacts):
            return 0o600
        return 0o644

    def _apply_file(
        self,
        path: Path,
        wanted: Dict[CatalogIdentifier, str],
        unwanted: Set[CatalogIdentifier],
        result: ApplyResult,
        default_mode: int,
    ) -> bool:
        if not path.parent.is_dir():
            raise PathNotFoundError(str(path.parent), details=f"directory for {path.name} does not exist")

        old_lines = self._read_lines(path)
        new_lines: List[str] = []
        placed: Set[CatalogIdentifier] = set()

        for line in old_lines:
            source = managed_source(line)
            if source is None:
                new_lines.append(line)
            elif source in wanted:
                if source in placed:
                    result.removed += 1
                    continue
                placed.add(source)
                if line != wanted[source]:
                    result.updated += 1
                new_lines.append(wanted[source])
            elif source in unwanted:
                result.removed += 1
            else:
                new_lines.append(line)

        for source in sorted(set(wanted) - placed):
            new_lines.append(wanted[source])
            result.added += 1

        if new_lines == old_lines:
            return False

        if result.dry_run:
            logger.info("Would update %s", path)
        else:
            self._write(path, new_lines, default_mode)
        return True

    def _write(self, path: Path, lines: List[str], default_mode: int) -> None:
        content = "".join(f"{line}\n" for line in lines)
        try:
            st = path.stat()
            mode, uid, gid = st.st_mode & 0o777, st.st_uid, st.st_gid
        except FileNotFoundError:
            parent = path.parent.stat()
            mode, uid, gid = default_mode, parent.st_uid, parent.st_gid

        owner = (uid, gid) if self.manage_ownership and os.geteuid() == 0 else None
        _replace_file(path, content, mode, owner)
        logger.debug("Wrote %s (%d lines)", path, len(lines))


__all__ = [
    "MARKER_PREFIX",
    "render_line",
    "managed_source",
    "AUTHORIZED_KEYS",
    "KNOWN_HOSTS",
    "ManagedFile",
    "load_manifest",
    "save_manifest",
    "ApplyResult",
    "FileTrustApplier",
]
