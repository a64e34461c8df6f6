"""
Archive codec for backup payloads.

Forward:  payload -> JSON -> gzip -> AES-256-GCM
Reverse:  AES-256-GCM -> gunzip -> JSON -> payload

Archive layout:
    MAGIC (4 bytes) | salt (16 bytes) | nonce (12 bytes) | ciphertext + GCM tag

The header (magic, salt, nonce) is bound to the ciphertext as associated data,
so any modification of the archive is detected on decode.

Values JSON cannot carry are written as single-key tag objects such as
{"$date": "..."}. Documents whose own keys start with "$" are wrapped in
{"$literal": {...}} so they come back unchanged.
"""

import base64
import gzip
import json
import os
import uuid
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from bson import ObjectId
from bson.errors import InvalidId
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import ArchiveDecodeError, EncryptionConfigError


MAGIC = b'FVB1'
SALT_SIZE = 16
NONCE_SIZE = 12
HEADER_SIZE = len(MAGIC) + SALT_SIZE + NONCE_SIZE
KEY_LENGTH = 32
DEFAULT_ITERATIONS = 480000
MIN_SECRET_LENGTH = 16


def _encode_value(value: Any):
    """json.dumps default hook: tag values JSON cannot represent."""
    if isinstance(value, datetime):
        return {'$date': value.isoformat()}
    if isinstance(value, date):
        return {'$dateOnly': value.isoformat()}
    if isinstance(value, Decimal):
        return {'$decimal': str(value)}
    if isinstance(value, (bytes, bytearray)):
        return {'$binary': base64.b64encode(bytes(value)).decode('ascii')}
    if isinstance(value, ObjectId):
        return {'$oid': str(value)}
    if isinstance(value, uuid.UUID):
        return {'$uuid': str(value)}
    raise TypeError(f"Object of type {type(value).__name__} is not serializable")


_DECODERS = {
    '$date': datetime.fromisoformat,
    '$dateOnly': date.fromisoformat,
    '$decimal': Decimal,
    '$binary': lambda s: base64.b64decode(s.encode('ascii'), validate=True),
    '$oid': ObjectId,
    '$uuid': uuid.UUID,
}

# Wraps user dicts with '$'-prefixed keys so they are never read back as tags
LITERAL_TAG = '$literal'


def _is_tag_shaped(obj: Dict[Any, Any]) -> bool:
    return any(isinstance(key, str) and key.startswith('$') for key in obj)


def _escape(value: Any):
    """Copy a payload, wrapping every tag-shaped dict in a $literal tag."""
    if isinstance(value, dict):
        escaped = {key: _escape(item) for key, item in value.items()}
        if _is_tag_shaped(escaped):
            return {LITERAL_TAG: escaped}
        return escaped
    if isinstance(value, (list, tuple)):
        return [_escape(item) for item in value]
    return value


def _decode_tag(tag: str, raw: Any):
    try:
        return _DECODERS[tag](raw)
    except (ValueError, TypeError, AttributeError, InvalidOperation, InvalidId) as e:
        raise ArchiveDecodeError(f"Invalid {tag} value in archive: {e}")


def _restore(value: Any):
    """Reverse of _escape and _encode_value over a parsed JSON document."""
    if isinstance(value, list):
        return [_restore(item) for item in value]
    if not isinstance(value, dict):
        return value

    if len(value) == 1:
        (tag, raw), = value.items()
        if tag == LITERAL_TAG and isinstance(raw, dict):
            return {key: _restore(item) for key, item in raw.items()}
        if tag in _DECODERS:
            return _decode_tag(tag, raw)

    return {key: _restore(item) for key, item in value.items()}


def serialize(payload: Any) -> bytes:
    """Serialize a payload to UTF-8 JSON bytes with tagged extended types."""
    return json.dumps(
        _escape(payload),
        default=_encode_value,
        ensure_ascii=False,
        separators=(',', ':')
    ).encode('utf-8')


def deserialize(data: bytes) -> Any:
    """
    Parse JSON bytes produced by serialize().

    Raises:
        ArchiveDecodeError: If a tagged value cannot be decoded
    """
    return _restore(json.loads(data.decode('utf-8')))


class ArchiveCodec:
    """
    Turns structured backup payloads into encrypted archives and back.

    The codec knows nothing about collections, storage or scheduling.
    """

    def __init__(self, secret: str, iterations: int = DEFAULT_ITERATIONS, compression_level: int = 6):
        """
        Args:
            secret: Operator-supplied encryption secret
            iterations: PBKDF2 iteration count
            compression_level: gzip level (1-9)

        Raises:
            EncryptionConfigError: If the secret is missing or too short
        """
        if not secret:
            raise EncryptionConfigError(
                "BACKUP_ENCRYPTION_KEY is not configured. Backups cannot be "
                "created or restored without an encryption secret."
            )
        if len(secret) < MIN_SECRET_LENGTH:
            raise EncryptionConfigError(
                f"BACKUP_ENCRYPTION_KEY must be at least {MIN_SECRET_LENGTH} characters"
            )
        if iterations < 1:
            raise EncryptionConfigError("Key derivation iterations must be positive")

        self._secret = secret.encode('utf-8')
        self.iterations = iterations
        self.compression_level = compression_level

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._secret)

    def encode(self, payload: Any) -> bytes:
        """
        Serialize, compress and encrypt a payload.

        Args:
            payload: JSON-compatible structure (datetime, Decimal, bytes,
                ObjectId and UUID values are preserved)

        Returns:
            Archive bytes
        """
        compressed = gzip.compress(serialize(payload), compresslevel=self.compression_level)

        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        header = MAGIC + salt + nonce

        ciphertext = AESGCM(self._derive_key(salt)).encrypt(nonce, compressed, header)
        return header + ciphertext

    def decode(self, blob: bytes) -> Any:
        """
        Decrypt, decompress and parse an archive.

        Raises:
            ArchiveDecodeError: If the archive is malformed, tampered with,
                or was encrypted with a different secret
        """
        if len(blob) <= HEADER_SIZE or not blob.startswith(MAGIC):
            raise ArchiveDecodeError("Not a finvault backup archive")

        header = blob[:HEADER_SIZE]
        salt = header[len(MAGIC):len(MAGIC) + SALT_SIZE]
        nonce = header[len(MAGIC) + SALT_SIZE:]

        try:
            compressed = AESGCM(self._derive_key(salt)).decrypt(nonce, blob[HEADER_SIZE:], header)
        except InvalidTag:
            raise ArchiveDecodeError(
                "Archive authentication failed (wrong key or tampered data)"
            )

        try:
            return deserialize(gzip.decompress(compressed))
        except (OSError, EOFError, ValueError) as e:
            raise ArchiveDecodeError(f"Failed to decompress archive: {e}")

    def encode_to_file(self, payload: Any, path: str) -> int:
        """
        Encode a payload and write it to path.

        Returns:
            Size of the written archive in bytes
        """
        blob = self.encode(payload)
        with open(path, 'wb') as f:
            f.write(blob)
        return len(blob)

    def decode_file(self, path: str) -> Any:
        """Read and decode an archive from path."""
        with open(path, 'rb') as f:
            return self.decode(f.read())
