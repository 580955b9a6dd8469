"""
SSH Public Key Line Parser

Parses OpenSSH public key text (``[options] algorithm material [comment]``)
into KeyRecord instances. The same format covers ``*.pub`` files,
authorized_keys lines and, with the host pattern in the options position,
known_hosts lines.

Functions:
    - parse_key_line: Parse one logical line into a KeyRecord
    - flatten_key_text: Canonical multi-line to single-line joining
    - read_key_text: Read a key file as text trimmed of structural noise
    - read_key_file: read_key_text + parse_key_line

Parsing Rules:
    The algorithm token starts with ``ssh-``, ``ecdsa-``, ``sk-ecdsa-`` or
    ``sk-ssh-`` at a token boundary. It is followed by whitespace and the key
    material (any non-whitespace run, never base64-decoded here), then an
    optional comment running to the end of the line. Everything before the
    algorithm token, right-trimmed, is the options field.

Usage:
    from sshtrust.key_parser import parse_key_line

    record = parse_key_line("no-pty ssh-ed25519 AAAAC3Nza... backup@repo01")
    print(record.algorithm, record.options)  # ssh-ed25519 no-pty
"""

import logging
import re
from pathlib import Path
from typing import Union

from .exceptions import MalformedKeyLineError, PathNotFoundError
from .models import KeyRecord
from .utils.logging_security import sanitize_key_line_for_log

logger = logging.getLogger(__name__)

ALGORITHM_PREFIXES = ("sk-ecdsa-", "sk-ssh-", "ssh-", "ecdsa-")

KEY_LINE_RE = re.compile(
    r"(?<!\S)"
    r"((?:sk-ecdsa-|sk-ssh-|ssh-|ecdsa-)\S+)"  # algorithm
    r"\s+(\S+)"  # material
    r"(?:\s+(.*?))?"  # comment
    r"\s*$"
)

_WHITESPACE_RUN = re.compile(r"\s+")


def flatten_key_text(text: str) -> str:
    """
    Join multi-line key file content into one logical line.

    Blank lines are dropped, remaining lines are joined with a single space
    and every whitespace run is collapsed to one space.

    Args:
        text: Raw file content

    Returns:
        Single line, stripped; empty string for blank input

    Example:
        >>> flatten_key_text("\\n  ssh-ed25519   AAAA\\n comment@host \\n")
        'ssh-ed25519 AAAA comment@host'
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return _WHITESPACE_RUN.sub(" ", " ".join(lines)).strip()


def parse_key_line(raw: str) -> KeyRecord:
    """
    Parse one OpenSSH public key line.

    Args:
        raw: A single logical line. Callers holding multi-line file content
            must pass it through flatten_key_text() first.

    Returns:
        KeyRecord with options/comment set only when non-empty

    Raises:
        MalformedKeyLineError: No algorithm/material tail was found, or the
            input still contains line breaks

    Example:
        >>> parse_key_line("ssh-rsa ASlightlyDummyRSAKey comment@host").to_dict()
        {'algorithm': 'ssh-rsa', 'material': 'ASlightlyDummyRSAKey', 'comment': 'comment@host'}
    """
    if raw is None:
        raise MalformedKeyLineError("", details="no input")

    text = str(raw)
    if "\n" in text.strip() or "\r" in text.strip():
        raise MalformedKeyLineError(text, details="multi-line input must be flattened before parsing")

    matched = KEY_LINE_RE.search(text)
    if matched is None:
        logger.debug("No key line found in: %s", sanitize_key_line_for_log(text))
        raise MalformedKeyLineError(text, details="no algorithm and key material found")

    algorithm, material, comment = matched.group(1), matched.group(2), matched.group(3)
    options = text[: matched.start()].rstrip()

    return KeyRecord(
        algorithm=algorithm,
        material=material,
        options=options or None,
        comment=(comment or "").strip() or None,
    )


def read_key_text(path: Union[str, Path]) -> str:
    """
    Read a key file and flatten it to a single line.

    Raises:
        PathNotFoundError: If the file does not exist
    """
    key_file = Path(path)
    if not key_file.is_file():
        raise PathNotFoundError(str(key_file))
    return flatten_key_text(key_file.read_text(encoding="utf-8", errors="replace"))


def read_key_file(path: Union[str, Path]) -> KeyRecord:
    """
    Read and parse a public key file.

    Raises:
        PathNotFoundError: If the file does not exist
        MalformedKeyLineError: If its content is not a key line
    """
    return parse_key_line(read_key_text(path))


__all__ = [
    "ALGORITHM_PREFIXES",
    "flatten_key_text",
    "parse_key_line",
    "read_key_text",
    "read_key_file",
]
