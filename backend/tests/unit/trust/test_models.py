"""
Unit Tests for sshtrust Data Models

Tests key_path/KeyConfig path derivation, CatalogIdentifier parsing and
ordering, KeyRecord fingerprints and trust artifact helpers.
"""

from pathlib import Path

import pytest

from sshtrust.models import (
    AuthorizedKeyArtifact,
    CatalogIdentifier,
    Ensure,
    KeyConfig,
    KeyFamily,
    KeyKind,
    KeyRecord,
    KnownHostArtifact,
    artifact_to_dict,
    key_path,
)

from .conftest import SAMPLE_ED25519_FINGERPRINT, SAMPLE_ED25519_MATERIAL


class TestKeyPath:
    """Tests for key_path() and KeyConfig."""

    def test_public_rsa_path(self) -> None:
        """Public paths end in .pub."""
        assert key_path("/home/user/.ssh", "rsa", True) == Path("/home/user/.ssh/id_rsa.pub")

    def test_private_ed25519_path(self) -> None:
        """Private paths have no suffix."""
        assert key_path("/home/user/.ssh", "ed25519", False) == Path("/home/user/.ssh/id_ed25519")

    def test_security_key_family_uses_underscore(self) -> None:
        """Dashes in the family become underscores in the file name."""
        assert key_path("/k", KeyFamily.ECDSA_SK) == Path("/k/id_ecdsa_sk.pub")

    @pytest.mark.parametrize("directory", [None, ""])
    def test_missing_directory_raises(self, directory) -> None:
        """A missing directory is rejected."""
        with pytest.raises(ValueError):
            key_path(directory, "rsa")

    def test_unknown_family_raises(self) -> None:
        """An unknown family is rejected."""
        with pytest.raises(ValueError):
            key_path("/home/user/.ssh", "rsa4096")

    def test_key_config_defaults_to_ed25519(self, tmp_path: Path) -> None:
        """KeyConfig derives both paths from directory and family."""
        config = KeyConfig(directory=tmp_path)

        assert config.family == KeyFamily.ED25519
        assert config.private_key_path == tmp_path / "id_ed25519"
        assert config.public_key_path == tmp_path / "id_ed25519.pub"


class TestCatalogIdentifier:
    """Tests for CatalogIdentifier."""

    def test_string_round_trip(self) -> None:
        """parse(str(identifier)) returns an equal identifier."""
        ident = CatalogIdentifier.user("pgbackup", "repo01")

        assert str(ident) == "user:pgbackup@repo01"
        assert CatalogIdentifier.parse(str(ident)) == ident

    def test_host_identifier_uses_family(self) -> None:
        """Host identifiers carry the key family as role."""
        ident = CatalogIdentifier.host("ed25519", "psql01.example.com")

        assert ident.kind == KeyKind.HOST
        assert str(ident) == "host:ed25519@psql01.example.com"

    @pytest.mark.parametrize(
        "text",
        ["pgbackup@repo01", "user:@repo01", "user:pg backup@repo01", "group:pg@repo01", "user:pg@"],
    )
    def test_invalid_identifiers(self, text: str) -> None:
        """Malformed identifiers raise ValueError."""
        with pytest.raises(ValueError):
            CatalogIdentifier.parse(text)

    def test_identifiers_are_hashable_and_sortable(self) -> None:
        """Identifiers work as dict keys and sort deterministically."""
        a = CatalogIdentifier.user("postgres", "psql02")
        b = CatalogIdentifier.user("postgres", "psql01")

        assert sorted([a, b]) == [b, a]
        assert {a: 1}[CatalogIdentifier.parse("user:postgres@psql02")] == 1


class TestKeyRecord:
    """Tests for KeyRecord helpers."""

    def test_fingerprint_matches_openssh(self) -> None:
        """The fingerprint matches ssh-keygen -l output."""
        record = KeyRecord("ssh-ed25519", SAMPLE_ED25519_MATERIAL)

        assert record.fingerprint == SAMPLE_ED25519_FINGERPRINT

    def test_fingerprint_of_undecodable_material(self) -> None:
        """Material that is not base64 has no fingerprint."""
        assert KeyRecord("ssh-rsa", "not*base64!").fingerprint is None

    def test_to_line_skips_absent_fields(self) -> None:
        """to_line() only includes present fields."""
        assert KeyRecord("ssh-rsa", "AAAA").to_line() == "ssh-rsa AAAA"
        assert KeyRecord("ssh-rsa", "AAAA", "no-pty", "c@h").to_line() == "no-pty ssh-rsa AAAA c@h"


class TestArtifacts:
    """Tests for trust artifact helpers."""

    def test_absent_keeps_slot(self) -> None:
        """absent() flips ensure and keeps the slot."""
        artifact = AuthorizedKeyArtifact(
            source=CatalogIdentifier.user("pgbackup", "repo01"),
            user="postgres",
            algorithm="ssh-ed25519",
            material="AAAA",
        )

        gone = artifact.absent()

        assert gone.ensure == Ensure.ABSENT
        assert gone.slot == artifact.slot
        assert gone != artifact

    def test_known_host_to_dict(self) -> None:
        """artifact_to_dict() flattens known_hosts artifacts."""
        artifact = KnownHostArtifact(
            source=CatalogIdentifier.host("ed25519", "repo01"),
            target_file="/var/lib/pgsql/.ssh/known_hosts",
            host_pattern="repo01",
            algorithm="ssh-ed25519",
            material="AAAA",
        )

        data = artifact_to_dict(artifact)

        assert data["type"] == "known_host"
        assert data["source"] == "host:ed25519@repo01"
        assert data["ensure"] == "present"
        assert data["host_pattern"] == "repo01"
