"""
Unit tests for the archive codec (finvault/backup/codec.py).

Tests serialization of extended types, encryption and tamper detection.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal

import pytest
from bson import ObjectId

from finvault.backup.codec import (
    ArchiveCodec,
    serialize,
    deserialize,
    MAGIC,
    HEADER_SIZE
)
from finvault.backup.errors import ArchiveDecodeError, EncryptionConfigError


SECRET = 'test-encryption-secret-0123456789'


@pytest.fixture
def sample_payload():
    return {
        'metadata': {
            'backupId': '20240301T020000000000Z-full-abc123',
            'backupType': 'full',
            'totalDocuments': 3,
        },
        'collections': {
            'accounts': [
                {
                    '_id': ObjectId('65e1f0a2c3b4d5e6f7a8b9c0'),
                    'name': 'Checking',
                    'balance': Decimal('1520.75'),
                    'openedOn': date(2023, 5, 17),
                    'createdAt': datetime(2024, 2, 29, 8, 30, 15, 123456),
                    'externalRef': uuid.UUID('12345678-1234-5678-1234-567812345678'),
                    'avatar': b'\x89PNG\r\n',
                    'tags': ['primary', 'joint'],
                    'closed': False,
                    'notes': None,
                },
            ],
            'transactions': [
                {'_id': 1, 'amount': Decimal('-12.50'), 'memo': 'Café'},
                {'_id': 2, 'amount': Decimal('2500.00'), 'memo': 'Salary'},
            ],
        },
    }


class TestSerialization:
    """Test JSON serialization with tagged types."""

    def test_extended_types_survive_roundtrip(self, sample_payload):
        """Test datetime, date, Decimal, bytes, ObjectId and UUID are preserved."""
        restored = deserialize(serialize(sample_payload))

        account = restored['collections']['accounts'][0]
        assert isinstance(account['_id'], ObjectId)
        assert isinstance(account['balance'], Decimal)
        assert isinstance(account['openedOn'], date)
        assert isinstance(account['createdAt'], datetime)
        assert isinstance(account['externalRef'], uuid.UUID)
        assert isinstance(account['avatar'], bytes)
        assert restored == sample_payload

    def test_serialize_is_compact_utf8(self):
        """Test output has no whitespace and keeps non-ASCII characters."""
        data = serialize({'memo': 'Café', 'n': [1, 2]})

        assert data == '{"memo":"Café","n":[1,2]}'.encode('utf-8')

    def test_serialize_unsupported_type_raises(self):
        """Test unknown types are rejected rather than silently stringified."""
        with pytest.raises(TypeError):
            serialize({'value': object()})

    def test_plain_dict_with_dollar_key_and_extra_fields_untouched(self):
        """Test only single-key tagged objects are decoded."""
        payload = {'filter': {'$date': '2024-01-01T00:00:00', 'other': 1}}

        assert deserialize(serialize(payload)) == payload


class TestTagShapedDocuments:
    """Test user data that looks like a type tag comes back unchanged."""

    @pytest.mark.parametrize('value', [
        {'$date': '2024-01-01T00:00:00'},
        {'$decimal': 'not-a-number'},
        {'$oid': 'xyz'},
        {'$date': 'yesterday'},
        {'$literal': {'$uuid': 'abc'}},
        {'$binary': 7},
    ])
    def test_tag_shaped_value_roundtrip(self, codec, value):
        payload = {'collections': {'notes': [{'_id': 1, 'note': value}]}}

        assert codec.decode(codec.encode(payload)) == payload

    def test_tagged_values_inside_escaped_document(self):
        payload = [{'$set': {'balance': Decimal('10.50'), 'at': datetime(2024, 3, 1, 2, 0)}}]

        restored = deserialize(serialize(payload))

        assert restored == payload
        assert isinstance(restored[0]['$set']['balance'], Decimal)

    @pytest.mark.parametrize('raw', [
        b'{"v":{"$decimal":"not-a-number"}}',
        b'{"v":{"$oid":"xyz"}}',
        b'{"v":{"$date":"yesterday"}}',
        b'{"v":{"$uuid":42}}',
        b'{"v":{"$binary":"!!"}}',
    ])
    def test_malformed_tag_raises_decode_error(self, raw):
        with pytest.raises(ArchiveDecodeError):
            deserialize(raw)


class TestArchiveCodecConfiguration:
    """Test codec construction."""

    def test_missing_secret_raises(self):
        """Test a missing secret is a hard configuration error."""
        with pytest.raises(EncryptionConfigError, match='not configured'):
            ArchiveCodec(None)

        with pytest.raises(EncryptionConfigError):
            ArchiveCodec('')

    def test_short_secret_raises(self):
        """Test secrets under 16 characters are rejected."""
        with pytest.raises(EncryptionConfigError, match='at least 16'):
            ArchiveCodec('too-short')

    def test_invalid_iterations_raise(self):
        with pytest.raises(EncryptionConfigError):
            ArchiveCodec(SECRET, iterations=0)


class TestArchiveCodec:
    """Test encode/decode of archives."""

    def test_roundtrip(self, codec, sample_payload):
        """Test decode(encode(payload)) == payload."""
        blob = codec.encode(sample_payload)

        assert codec.decode(blob) == sample_payload

    def test_archive_layout(self, codec, sample_payload):
        """Test archive starts with magic and is not plaintext."""
        blob = codec.encode(sample_payload)

        assert blob.startswith(MAGIC)
        assert len(blob) > HEADER_SIZE
        assert b'Checking' not in blob
        assert b'Salary' not in blob

    def test_random_salt_and_nonce_per_archive(self, codec, sample_payload):
        """Test encoding the same payload twice gives different archives."""
        first = codec.encode(sample_payload)
        second = codec.encode(sample_payload)

        assert first != second
        assert first[:HEADER_SIZE] != second[:HEADER_SIZE]
        assert codec.decode(first) == codec.decode(second)

    def test_wrong_secret_fails(self, codec, sample_payload):
        """Test decoding with a different secret raises ArchiveDecodeError."""
        blob = codec.encode(sample_payload)
        other = ArchiveCodec('a-completely-different-secret', iterations=1000)

        with pytest.raises(ArchiveDecodeError, match='authentication failed'):
            other.decode(blob)

    @pytest.mark.parametrize('position', [0, 5, HEADER_SIZE - 1, HEADER_SIZE + 3, -1])
    def test_tampered_byte_detected(self, codec, sample_payload, position):
        """Test flipping any single byte (header or ciphertext) is detected."""
        blob = bytearray(codec.encode(sample_payload))
        blob[position] ^= 0x01

        with pytest.raises(ArchiveDecodeError):
            codec.decode(bytes(blob))

    def test_truncated_archive_fails(self, codec, sample_payload):
        blob = codec.encode(sample_payload)

        with pytest.raises(ArchiveDecodeError):
            codec.decode(blob[:-10])

        with pytest.raises(ArchiveDecodeError, match='Not a finvault backup archive'):
            codec.decode(blob[:HEADER_SIZE])

    def test_non_archive_input_fails(self, codec):
        with pytest.raises(ArchiveDecodeError):
            codec.decode(b'{"collections": {}}')

    def test_file_roundtrip(self, codec, sample_payload, tmp_path):
        """Test encode_to_file returns the written size and decode_file reads it back."""
        path = tmp_path / 'archive.json.gz.enc'

        size = codec.encode_to_file(sample_payload, str(path))

        assert size == path.stat().st_size
        assert codec.decode_file(str(path)) == sample_payload

    def test_empty_payload_roundtrip(self, codec):
        payload = {'metadata': {}, 'collections': {}}

        assert codec.decode(codec.encode(payload)) == payload
