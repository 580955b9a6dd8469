"""
SSH Trust Data Models and Enums

Type-safe data structures shared by the parser, the key store, the export
catalog and the trust distributor.

This module contains:
- KeyFamily: Key pair algorithm families understood by ssh-keygen
- KeyRecord: A parsed OpenSSH public key line
- KeyPath: A path reference stored in the catalog instead of a parsed key
- KeyConfig: Where a key pair lives and which family it uses
- CatalogIdentifier: Stable (kind, role, cluster) key of a catalog entry
- AuthorizedKeyArtifact / KnownHostArtifact: Rendered trust entries

Usage:
    from sshtrust.models import CatalogIdentifier, KeyConfig, KeyFamily

    config = KeyConfig(family=KeyFamily.ED25519, directory=Path("/var/lib/pgbackrest/.ssh"))
    print(config.public_key_path)  # /var/lib/pgbackrest/.ssh/id_ed25519.pub

    ident = CatalogIdentifier.parse("user:pgbackup@repo01")
    print(ident.role, ident.cluster)
"""

import base64
import binascii
import hashlib
import re
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union


class KeyFamily(str, Enum):
    """
    Key pair families accepted by ``ssh-keygen -t``.

    Attributes:
        ED25519: Default family, modern and fast
        RSA: Legacy, widely supported
        ECDSA: NIST curves
        DSA: Deprecated, kept for old deployments
        ECDSA_SK / ED25519_SK: FIDO security-key backed variants
    """

    RSA = "rsa"
    DSA = "dsa"
    ECDSA = "ecdsa"
    ECDSA_SK = "ecdsa-sk"
    ED25519 = "ed25519"
    ED25519_SK = "ed25519-sk"

    @property
    def file_stem(self) -> str:
        """Key file name without suffix, e.g. ``id_ecdsa_sk``."""
        return "id_" + self.value.replace("-", "_")


DEFAULT_KEY_FAMILY = KeyFamily.ED25519


@dataclass(frozen=True)
class KeyRecord:
    """
    Parsed OpenSSH public key line: ``[options] algorithm material [comment]``.

    The material is opaque base64 text; it is never decoded during parsing.
    ``options`` and ``comment`` are None when absent, never empty strings.
    """

    algorithm: str
    material: str
    options: Optional[str] = None
    comment: Optional[str] = None

    def to_line(self) -> str:
        """Serialize back to a single OpenSSH public key line."""
        parts = [self.options, self.algorithm, self.material, self.comment]
        return " ".join(p for p in parts if p)

    def to_dict(self) -> Dict[str, str]:
        """Dictionary form with absent optional fields omitted."""
        data = {"algorithm": self.algorithm, "material": self.material}
        if self.options:
            data["options"] = self.options
        if self.comment:
            data["comment"] = self.comment
        return data

    @property
    def fingerprint(self) -> Optional[str]:
        """
        SHA256 fingerprint in OpenSSH format (``SHA256:base64hash``).

        Returns None when the material is not valid base64.
        """
        try:
            key_data = base64.b64decode(self.material, validate=True)
        except (binascii.Error, ValueError):
            return None
        digest = base64.b64encode(hashlib.sha256(key_data).digest()).decode().rstrip("=")
        return f"SHA256:{digest}"


@dataclass(frozen=True)
class KeyPath:
    """Catalog value that points at a public key file, resolved by the consumer."""

    path: str

    def __str__(self) -> str:
        return self.path


CatalogValue = Union[KeyRecord, KeyPath]


def key_path(directory: Optional[Union[str, Path]], family: Union[str, KeyFamily], public: bool = True) -> Path:
    """
    Build the path of a key file inside ``directory``.

    Args:
        directory: Directory holding the key pair
        family: Key family name or KeyFamily
        public: Return the ``.pub`` path when True, the private key path otherwise

    Returns:
        Path such as ``/home/user/.ssh/id_rsa.pub``

    Raises:
        ValueError: If directory is missing or family is unknown

    Example:
        >>> key_path("/home/user/.ssh", "ed25519", public=False)
        PosixPath('/home/user/.ssh/id_ed25519')
    """
    if not directory:
        raise ValueError("Key directory is required")
    stem = KeyFamily(family).file_stem
    return Path(directory) / (f"{stem}.pub" if public else stem)


@dataclass(frozen=True)
class KeyConfig:
    """
    Location and family of one key pair.

    ``directory`` of None means the owning account's ``~/.ssh``; the key
    store fills it in before any path is derived.
    """

    family: KeyFamily = DEFAULT_KEY_FAMILY
    directory: Optional[Path] = None

    def with_directory(self, directory: Union[str, Path]) -> "KeyConfig":
        return replace(self, directory=Path(directory))

    @property
    def private_key_path(self) -> Path:
        return key_path(self.directory, self.family, public=False)

    @property
    def public_key_path(self) -> Path:
        return key_path(self.directory, self.family, public=True)


class KeyKind(str, Enum):
    """Whether a catalog entry is an account key or a host key."""

    USER = "user"
    HOST = "host"


_ROLE_PATTERN = r"[A-Za-z0-9._-]+"
_CLUSTER_PATTERN = r"[A-Za-z0-9._:-]+"
IDENTIFIER_RE = re.compile(rf"^(user|host):({_ROLE_PATTERN})@({_CLUSTER_PATTERN})$")


@dataclass(frozen=True, order=True)
class CatalogIdentifier:
    """
    Stable key of one export catalog entry.

    ``role`` is the account name for user keys and the key family for host
    keys; ``cluster`` is the exporting host's stable id. The string form is
    ``<kind>:<role>@<cluster>``.
    """

    kind: KeyKind
    role: str
    cluster: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", KeyKind(self.kind))
        if not re.fullmatch(_ROLE_PATTERN, self.role or ""):
            raise ValueError(f"Invalid catalog role: {self.role!r}")
        if not re.fullmatch(_CLUSTER_PATTERN, self.cluster or ""):
            raise ValueError(f"Invalid catalog cluster id: {self.cluster!r}")

    @classmethod
    def parse(cls, text: str) -> "CatalogIdentifier":
        """Parse ``user:pgbackup@repo01``; raises ValueError on bad input."""
        m = IDENTIFIER_RE.match(text.strip())
        if not m:
            raise ValueError(f"Invalid catalog identifier: {text!r}")
        return cls(KeyKind(m.group(1)), m.group(2), m.group(3))

    @classmethod
    def user(cls, role: str, cluster: str) -> "CatalogIdentifier":
        return cls(KeyKind.USER, role, cluster)

    @classmethod
    def host(cls, family: Union[str, KeyFamily], cluster: str) -> "CatalogIdentifier":
        return cls(KeyKind.HOST, KeyFamily(family).value, cluster)

    def __str__(self) -> str:
        return f"{self.kind.value}:{self.role}@{self.cluster}"


class Ensure(str, Enum):
    """Desired state of a rendered trust artifact."""

    PRESENT = "present"
    ABSENT = "absent"


@dataclass(frozen=True)
class AuthorizedKeyArtifact:
    """
    One authorized_keys grant for a local account.

    Only identity-relevant fields of the source key cross the trust
    boundary. ``options`` holds restrictions configured by the consumer.
    """

    source: CatalogIdentifier
    user: str
    algorithm: str
    material: str
    target_file: Optional[str] = None
    options: Optional[str] = None
    ensure: Ensure = Ensure.PRESENT

    @property
    def slot(self) -> tuple:
        """Identity of the managed line this artifact owns."""
        return ("authorized_key", self.user, self.target_file, self.source)

    def absent(self) -> "AuthorizedKeyArtifact":
        return replace(self, ensure=Ensure.ABSENT)


@dataclass(frozen=True)
class KnownHostArtifact:
    """One known_hosts pin of a peer host key."""

    source: CatalogIdentifier
    target_file: str
    host_pattern: str
    algorithm: str
    material: str
    ensure: Ensure = Ensure.PRESENT

    @property
    def slot(self) -> tuple:
        return ("known_host", self.target_file, self.source)

    def absent(self) -> "KnownHostArtifact":
        return replace(self, ensure=Ensure.ABSENT)


TrustArtifact = Union[AuthorizedKeyArtifact, KnownHostArtifact]


def artifact_to_dict(artifact: TrustArtifact) -> Dict[str, Any]:
    """Flatten an artifact for JSON output and reporting."""
    data: Dict[str, Any] = {
        "type": artifact.slot[0],
        "source": str(artifact.source),
        "ensure": artifact.ensure.value,
        "algorithm": artifact.algorithm,
        "material": artifact.material,
    }
    if isinstance(artifact, AuthorizedKeyArtifact):
        data.update(user=artifact.user, target_file=artifact.target_file, options=artifact.options)
    else:
        data.update(target_file=artifact.target_file, host_pattern=artifact.host_pattern)
    return data


__all__ = [
    "KeyFamily",
    "DEFAULT_KEY_FAMILY",
    "KeyRecord",
    "KeyPath",
    "CatalogValue",
    "key_path",
    "KeyConfig",
    "KeyKind",
    "CatalogIdentifier",
    "Ensure",
    "AuthorizedKeyArtifact",
    "KnownHostArtifact",
    "TrustArtifact",
    "artifact_to_dict",
]
