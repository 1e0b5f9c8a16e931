"""Content hashing utilities for identity and deduplication."""

import hashlib
import os
from pathlib import Path


def calculate_content_hash(content: str | bytes) -> str:
    """
    Calculate SHA-256 hash of content.

    Args:
        content: String or bytes content to hash

    Returns:
        Hexadecimal string representation of the SHA-256 hash (64 characters)
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    return hashlib.sha256(content).hexdigest()


def calculate_truncated_hash(content: str | bytes, num_bytes: int = 16) -> str:
    """
    Calculate a SHA-256 hash truncated to its first ``num_bytes`` bytes.

    Args:
        content: String or bytes content to hash
        num_bytes: Number of digest bytes to keep (default: 16)

    Returns:
        Hex string of ``2 * num_bytes`` characters
    """
    if isinstance(content, str):
        content = content.encode("utf-8")

    return hashlib.sha256(content).digest()[:num_bytes].hex()


def canonical_path(path: Path | str) -> str:
    """Absolute, normalized form of a filesystem path (symlinks not resolved)."""
    return os.path.normpath(os.path.abspath(os.path.expanduser(str(path))))


def project_id_for_path(path: Path | str) -> str:
    """
    Stable project identifier for a working directory.

    The id is the SHA-256 of the canonical absolute path, truncated to
    16 bytes and hex encoded.
    """
    return calculate_truncated_hash(canonical_path(path))
