"""
Unit Tests for KeyMaterialStore and SshKeygenGenerator

Tests:
- Idempotent ensure_key (generator invoked once across repeated calls)
- Missing directory and orphaned private key handling
- Default ~/.ssh resolution from the account database
- ssh-keygen argv construction and failure mapping

ssh-keygen itself is never run; subprocess.run is mocked.
"""

import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from sshtrust.exceptions import ErrorKind, GenerationFailedError, MalformedKeyLineError, PathNotFoundError
from sshtrust.key_store import KeyMaterialStore, SshKeygenGenerator, default_ssh_directory
from sshtrust.models import KeyConfig, KeyFamily

# =============================================================================
# KeyMaterialStore
# =============================================================================


class TestEnsureKey:
    """Tests for KeyMaterialStore.ensure_key()."""

    def test_generates_missing_key(self, store, generator, tmp_path: Path) -> None:
        """A missing key pair is generated and its public key returned."""
        record = store.ensure_key("pgbackup", KeyConfig(directory=tmp_path))

        assert generator.calls == [("pgbackup", tmp_path / "id_ed25519", KeyFamily.ED25519)]
        assert record.algorithm == "ssh-ed25519"
        assert record.comment == "pgbackup@test"

    def test_second_call_does_not_regenerate(self, store, generator, tmp_path: Path) -> None:
        """Two ensure_key calls invoke the generator once and return equal records."""
        config = KeyConfig(family=KeyFamily.RSA, directory=tmp_path)

        first = store.ensure_key("postgres", config)
        second = store.ensure_key("postgres", config)

        assert len(generator.calls) == 1
        assert first == second

    def test_existing_public_key_is_read(self, store, generator, tmp_path: Path) -> None:
        """An existing public key is never regenerated."""
        (tmp_path / "id_ed25519.pub").write_text("ssh-ed25519 AAAAexisting pg@db\n")

        record = store.ensure_key("postgres", KeyConfig(directory=tmp_path))

        assert generator.calls == []
        assert record.material == "AAAAexisting"

    def test_missing_directory(self, store, generator, tmp_path: Path) -> None:
        """A missing key directory raises PathNotFoundError without generating."""
        with pytest.raises(PathNotFoundError) as exc_info:
            store.ensure_key("postgres", KeyConfig(directory=tmp_path / "absent"))

        assert exc_info.value.kind == ErrorKind.PATH_NOT_FOUND
        assert generator.calls == []

    def test_orphaned_private_key_is_not_overwritten(self, store, generator, tmp_path: Path) -> None:
        """A private key without its public half is never overwritten."""
        private_key = tmp_path / "id_ed25519"
        private_key.write_text("private")

        with pytest.raises(GenerationFailedError):
            store.ensure_key("postgres", KeyConfig(directory=tmp_path))

        assert generator.calls == []
        assert private_key.read_text() == "private"

    def test_generator_without_output(self, tmp_path: Path) -> None:
        """A generator that creates no public key is a generation failure."""
        silent = MagicMock()
        store = KeyMaterialStore(generator=silent)

        with pytest.raises(GenerationFailedError):
            store.ensure_key("postgres", KeyConfig(directory=tmp_path))

        silent.generate.assert_called_once()

    def test_malformed_public_key_propagates(self, store, tmp_path: Path) -> None:
        """A corrupt public key on disk raises MalformedKeyLineError."""
        (tmp_path / "id_ed25519.pub").write_text("garbage\n")

        with pytest.raises(MalformedKeyLineError):
            store.ensure_key("postgres", KeyConfig(directory=tmp_path))

    def test_default_directory_from_account(self, store, tmp_path: Path) -> None:
        """Without a directory the account's ~/.ssh is used."""
        ssh_dir = tmp_path / ".ssh"
        ssh_dir.mkdir()
        entry = SimpleNamespace(pw_dir=str(tmp_path))

        with patch("sshtrust.key_store.pwd.getpwnam", return_value=entry):
            record = store.ensure_key("pgbackup", KeyConfig())

        assert record.algorithm == "ssh-ed25519"
        assert (ssh_dir / "id_ed25519.pub").exists()

    def test_unknown_account(self) -> None:
        """An account that does not exist has no ~/.ssh."""
        with patch("sshtrust.key_store.pwd.getpwnam", side_effect=KeyError("nobody-here")):
            with pytest.raises(PathNotFoundError):
                default_ssh_directory("nobody-here")

    def test_unknown_account_fails_generation(self, store, generator) -> None:
        """Generating for an account that does not exist is a generation failure."""
        with patch("sshtrust.key_store.pwd.getpwnam", side_effect=KeyError("nobody-here")):
            with pytest.raises(GenerationFailedError) as exc_info:
                store.ensure_key("nobody-here", KeyConfig())

        assert exc_info.value.kind == ErrorKind.GENERATION_FAILED
        assert generator.calls == []


# =============================================================================
# SshKeygenGenerator
# =============================================================================


class TestSshKeygenGenerator:
    """Tests for the ssh-keygen backed generator."""

    def test_command_for_current_account(self) -> None:
        """The current account runs ssh-keygen directly."""
        generator = SshKeygenGenerator(hostname="repo01")

        with patch("sshtrust.key_store.current_account", return_value="pgbackup"):
            cmd = generator.build_command("pgbackup", Path("/k/id_ed25519"), KeyFamily.ED25519)

        assert cmd == [
            "ssh-keygen",
            "-q",
            "-t",
            "ed25519",
            "-N",
            "",
            "-C",
            "pgbackup@repo01",
            "-f",
            "/k/id_ed25519",
        ]

    def test_command_for_other_account_uses_su(self) -> None:
        """Another account's key pair is generated through su."""
        generator = SshKeygenGenerator(hostname="repo01")

        with patch("sshtrust.key_store.current_account", return_value="root"):
            cmd = generator.build_command("pgbackup", Path("/var/lib/pgbackrest/.ssh/id_rsa"), KeyFamily.RSA)

        assert cmd[:4] == ["su", "-", "pgbackup", "-c"]
        assert cmd[4] == "ssh-keygen -q -t rsa -N '' -C pgbackup@repo01 -f /var/lib/pgbackrest/.ssh/id_rsa"

    def test_non_zero_exit(self) -> None:
        """A non-zero exit raises GenerationFailedError with exit code and stderr."""
        generator = SshKeygenGenerator(hostname="repo01")
        completed = subprocess.CompletedProcess(args=[], returncode=1, stdout="", stderr="su: user pg does not exist\n")

        with patch("sshtrust.key_store.subprocess.run", return_value=completed):
            with pytest.raises(GenerationFailedError) as exc_info:
                generator.generate("pg", Path("/k/id_ed25519"), KeyFamily.ED25519)

        error = exc_info.value
        assert error.kind == ErrorKind.GENERATION_FAILED
        assert error.exit_code == 1
        assert error.stderr == "su: user pg does not exist"
        assert "exit: 1" in str(error)

    def test_missing_binary(self) -> None:
        """A missing ssh-keygen binary raises GenerationFailedError."""
        generator = SshKeygenGenerator(executable="/nonexistent/ssh-keygen", hostname="h")

        with patch("sshtrust.key_store.current_account", return_value="pg"):
            with patch(
                "sshtrust.key_store.subprocess.run",
                side_effect=FileNotFoundError(2, "No such file", "/nonexistent/ssh-keygen"),
            ):
                with pytest.raises(GenerationFailedError) as exc_info:
                    generator.generate("pg", Path("/k/id_ed25519"), KeyFamily.ED25519)

        assert exc_info.value.exit_code is None
        assert exc_info.value.command[0] == "/nonexistent/ssh-keygen"

    def test_timeout(self) -> None:
        """A hung generator raises GenerationFailedError."""
        generator = SshKeygenGenerator(timeout=5, hostname="h")

        with patch(
            "sshtrust.key_store.subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="ssh-keygen", timeout=5),
        ):
            with pytest.raises(GenerationFailedError, match="timed out"):
                generator.generate("pg", Path("/k/id_ed25519"), KeyFamily.ED25519)

    def test_success(self) -> None:
        """A zero exit returns normally."""
        generator = SshKeygenGenerator(hostname="h")
        completed = subprocess.CompletedProcess(args=[], returncode=0, stdout="", stderr="")

        with patch("sshtrust.key_store.subprocess.run", return_value=completed) as run:
            generator.generate("pg", Path("/k/id_ed25519"), KeyFamily.ED25519)

        assert run.call_args.kwargs["timeout"] == 60
