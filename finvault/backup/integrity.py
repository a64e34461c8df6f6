"""
Content digests for backup archives.

SHA-256 over the encrypted archive bytes. Used when a backup is created
(to record the checksum) and on restore/verify (to detect corruption).
"""

import hashlib
import hmac

CHUNK_SIZE = 1024 * 1024


def compute_checksum(data: bytes) -> str:
    """Return the SHA-256 hex digest of data."""
    return hashlib.sha256(data).hexdigest()


def checksum_file(path: str) -> str:
    """
    Return the SHA-256 hex digest of a file, read in 1MB chunks.

    Args:
        path: Path to the file

    Returns:
        Hex digest string
    """
    hasher = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            hasher.update(chunk)
    return hasher.hexdigest()


def checksums_match(expected: str, actual: str) -> bool:
    """Constant-time comparison of two hex digests."""
    if not expected or not actual:
        return False
    return hmac.compare_digest(expected.lower(), actual.lower())


def verify_checksum(data: bytes, expected: str) -> bool:
    """True if data hashes to expected."""
    return checksums_match(expected, compute_checksum(data))


def verify_file(path: str, expected: str) -> bool:
    """True if the file at path hashes to expected."""
    return checksums_match(expected, checksum_file(path))
