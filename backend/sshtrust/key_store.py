"""
Key Material Store

Ensures a key pair exists for an account and returns its parsed public key.
Generation is delegated to an external generator (``ssh-keygen``) that runs
under the target account's identity.

Idempotency Rules:
    - "Is there anything to do" is decided by the PUBLIC key path: when the
      public key exists, nothing is generated.
    - "May we generate" is decided by the PRIVATE key path: an existing
      private key is never overwritten, even if its public half is missing.
    - No retries here; a failed pass is retried by running the pass again.

Usage:
    from sshtrust.key_store import KeyMaterialStore
    from sshtrust.models import KeyConfig, KeyFamily

    store = KeyMaterialStore()
    record = store.ensure_key("pgbackup", KeyConfig(family=KeyFamily.ED25519))
    print(record.to_line())

Security Notes:
    - Keys are generated without passphrase for unattended backup sessions
    - Private key content is never read by this module
"""

import getpass
import logging
import os
import pwd
import shlex
import socket
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List, Optional, Union

from .exceptions import GenerationFailedError, PathNotFoundError
from .key_parser import read_key_file
from .models import KeyConfig, KeyFamily, KeyRecord
from .utils.logging_security import sanitize_for_log

logger = logging.getLogger(__name__)


def current_account() -> str:
    """Name of the account this process runs as."""
    try:
        return pwd.getpwuid(os.geteuid()).pw_name
    except KeyError:
        return getpass.getuser()


def default_ssh_directory(owner: str) -> Path:
    """
    Return ``~owner/.ssh``.

    Raises:
        PathNotFoundError: If the account does not exist
    """
    try:
        home = pwd.getpwnam(owner).pw_dir
    except KeyError:
        raise PathNotFoundError(f"~{owner}/.ssh", details=f"account {owner!r} does not exist")
    return Path(home) / ".ssh"


class KeyGenerator(ABC):
    """Interface of the external key pair generator."""

    @abstractmethod
    def generate(self, owner: str, private_key_path: Path, family: KeyFamily) -> None:
        """
        Create ``private_key_path`` and ``private_key_path.pub`` for ``owner``.

        Raises:
            GenerationFailedError: On any generator failure
        """


class SshKeygenGenerator(KeyGenerator):
    """
    Key generator backed by the ``ssh-keygen`` executable.

    When the owner is not the account running this process, the command is
    wrapped in ``su - <owner> -c`` so the files are created with the owner's
    identity.

    Attributes:
        executable: ssh-keygen binary name or path
        timeout: Seconds before the generator is considered hung
        hostname: Used in the key comment (``owner@hostname``)
    """

    def __init__(
        self,
        executable: str = "ssh-keygen",
        timeout: int = 60,
        hostname: Optional[str] = None,
    ) -> None:
        self.executable = executable
        self.timeout = timeout
        self.hostname = hostname or socket.gethostname()

    def build_command(self, owner: str, private_key_path: Path, family: KeyFamily) -> List[str]:
        """Build the argv that generates the key pair."""
        keygen = [
            self.executable,
            "-q",
            "-t",
            KeyFamily(family).value,
            "-N",
            "",  # no passphrase
            "-C",
            f"{owner}@{self.hostname}",
            "-f",
            str(private_key_path),
        ]
        if owner == current_account():
            return keygen
        return ["su", "-", owner, "-c", shlex.join(keygen)]

    def generate(self, owner: str, private_key_path: Path, family: KeyFamily) -> None:
        cmd = self.build_command(owner, private_key_path, family)
        logger.info("Generating %s key pair for %s at %s", family.value, owner, private_key_path)

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise GenerationFailedError(f"Key generator not found: {e.filename}", command=cmd)
        except subprocess.TimeoutExpired:
            raise GenerationFailedError(f"Key generation timed out after {self.timeout}s", command=cmd)

        if result.returncode != 0:
            stderr = result.stderr or result.stdout
            logger.error("ssh-keygen failed for %s: %s", owner, sanitize_for_log(stderr, max_length=300))
            raise GenerationFailedError(
                "Key generation failed",
                command=cmd,
                exit_code=result.returncode,
                stderr=stderr,
            )


class KeyMaterialStore:
    """
    Per-host owner of key pair files.

    Example:
        >>> store = KeyMaterialStore(generator=SshKeygenGenerator(timeout=10))
        >>> record = store.ensure_key("postgres", KeyConfig())
        >>> record.algorithm
        'ssh-ed25519'
    """

    def __init__(self, generator: Optional[KeyGenerator] = None) -> None:
        self.generator = generator or SshKeygenGenerator()

    def resolve_config(self, owner: str, config: KeyConfig) -> KeyConfig:
        """
        Fill in the owner's ``~/.ssh`` when the config has no directory.

        Raises:
            GenerationFailedError: The owning account does not exist
        """
        if config.directory is None:
            try:
                return config.with_directory(default_ssh_directory(owner))
            except PathNotFoundError as e:
                raise GenerationFailedError(f"Cannot generate a key for {owner!r}: account does not exist") from e
        return config

    def ensure_key_pair(self, owner: str, config: KeyConfig) -> KeyConfig:
        """
        Generate the key pair described by ``config`` unless its public key exists.

        Args:
            owner: Account that owns (and generates) the key pair
            config: Key family and directory

        Returns:
            The config with its directory resolved

        Raises:
            PathNotFoundError: Key directory missing
            GenerationFailedError: Account missing, generator failed, or a private
                key exists without its public half
        """
        config = self.resolve_config(owner, config)
        public_key = config.public_key_path

        if public_key.exists():
            logger.debug("Public key already present: %s", public_key)
            return config

        if not config.directory.is_dir():
            raise PathNotFoundError(str(config.directory), details="key directory does not exist")

        private_key = config.private_key_path
        if private_key.exists():
            raise GenerationFailedError(
                f"Private key {private_key} exists without {public_key.name}; refusing to overwrite it",
            )

        self.generator.generate(owner, private_key, config.family)

        if not public_key.exists():
            raise GenerationFailedError(f"Generator did not create {public_key}")
        return config

    def ensure_key(self, owner: str, config: KeyConfig) -> KeyRecord:
        """
        Make sure ``owner`` has a key pair as described by ``config``.

        Returns:
            Parsed public key

        Raises:
            PathNotFoundError: Key directory missing
            GenerationFailedError: See ensure_key_pair()
            MalformedKeyLineError: The public key on disk does not parse
        """
        config = self.ensure_key_pair(owner, config)
        return read_key_file(config.public_key_path)

    def read_public_key(self, path: Union[str, Path]) -> KeyRecord:
        """Read an existing public key (host keys, path references); never generates."""
        return read_key_file(path)


__all__ = [
    "current_account",
    "default_ssh_directory",
    "KeyGenerator",
    "SshKeygenGenerator",
    "KeyMaterialStore",
]
