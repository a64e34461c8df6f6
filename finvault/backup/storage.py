"""
Object storage gateway for backup archives.

Archives are written to S3 with a structured key format:
    backups/{YYYY}/{backup_id}/{backup_id}.json.gz.enc

Every object is written with server-side encryption and an infrequent-access
storage class. All network calls carry explicit connect/read timeouts.
"""

import os
import logging
from datetime import datetime
from typing import Optional, Dict

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError, BotoCoreError

from .errors import StorageUnavailable, ObjectNotFound


logger = logging.getLogger(__name__)

KEY_PREFIX = 'backups'
ARCHIVE_SUFFIX = '.json.gz.enc'
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


def build_object_key(backup_id: str, year: int) -> str:
    """Deterministic object key for a backup archive."""
    return f"{KEY_PREFIX}/{year}/{backup_id}/{backup_id}{ARCHIVE_SUFFIX}"


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for storing backup archives in AWS S3.
    """

    def __init__(
        self,
        bucket_name: str,
        region: str = 'us-east-1',
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        storage_class: str = 'STANDARD_IA',
        server_side_encryption: str = 'AES256',
        connect_timeout: int = 10,
        read_timeout: int = 60,
        max_attempts: int = 3,
        endpoint_url: Optional[str] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (falls back to the default credential chain)
            secret_key: AWS secret access key
            storage_class: S3 storage class for written objects
            server_side_encryption: SSE algorithm for written objects
            connect_timeout: Seconds to wait for a connection
            read_timeout: Seconds to wait for a response
            max_attempts: Total attempts per request, including retries
            endpoint_url: Optional custom endpoint (S3-compatible stores)
        """
        if not bucket_name:
            raise StorageUnavailable("Backup bucket is not configured")

        self.bucket_name = bucket_name
        self.region = region
        self.storage_class = storage_class
        self.server_side_encryption = server_side_encryption

        client_config = BotoConfig(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={'max_attempts': max_attempts, 'mode': 'standard'}
        )

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url,
                config=client_config
            )
        except Exception as e:
            raise StorageUnavailable(f"Failed to initialize S3 client: {e}")

    @classmethod
    def from_config(cls, config) -> 'S3Storage':
        """Build a handler from a Flask config mapping."""
        return cls(
            bucket_name=config.get('BACKUP_S3_BUCKET'),
            region=config.get('AWS_REGION', 'us-east-1'),
            access_key=config.get('AWS_ACCESS_KEY_ID'),
            secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
            storage_class=config.get('BACKUP_S3_STORAGE_CLASS', 'STANDARD_IA'),
            server_side_encryption=config.get('BACKUP_S3_SSE', 'AES256'),
            connect_timeout=config.get('BACKUP_S3_CONNECT_TIMEOUT', 10),
            read_timeout=config.get('BACKUP_S3_READ_TIMEOUT', 60),
            max_attempts=config.get('BACKUP_S3_MAX_ATTEMPTS', 3),
            endpoint_url=config.get('BACKUP_S3_ENDPOINT_URL')
        )

    def _write_args(self) -> Dict[str, str]:
        args = {}
        if self.server_side_encryption:
            args['ServerSideEncryption'] = self.server_side_encryption
        if self.storage_class:
            args['StorageClass'] = self.storage_class
        return args

    def upload(self, local_path: str, backup_id: str, year: Optional[int] = None) -> Dict[str, str]:
        """
        Upload an archive to S3.

        Args:
            local_path: Path to local archive file
            backup_id: Backup identifier (used for the key structure)
            year: Year namespace (default: current UTC year)

        Returns:
            Storage location dict: {'bucket': ..., 'key': ...}

        Raises:
            StorageUnavailable: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageUnavailable(f"Local file not found: {local_path}")

        if year is None:
            year = datetime.utcnow().year
        s3_key = build_object_key(backup_id, year)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            logger.info(f"Uploaded {file_size} bytes to s3://{self.bucket_name}/{s3_key}")
            return {'bucket': self.bucket_name, 'key': s3_key}

        except ClientError as e:
            raise StorageUnavailable(f"S3 upload failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageUnavailable(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageUnavailable(f"Failed to read archive for upload: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        """
        Upload file using simple put_object.

        Args:
            local_path: Path to local file
            s3_key: S3 object key
        """
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f,
                **self._write_args()
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload.

        The upload is aborted if any part fails so no partial object remains.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key,
            **self._write_args()
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise

    def download(self, location: Dict[str, str], dest_path: str) -> str:
        """
        Download an archive to a local file.

        Args:
            location: Storage location dict ({'bucket', 'key'})
            dest_path: Local path to write to

        Returns:
            dest_path

        Raises:
            ObjectNotFound: If the object does not exist
            StorageUnavailable: If download fails
        """
        bucket = location.get('bucket') or self.bucket_name
        key = location['key']

        try:
            response = self.s3_client.get_object(Bucket=bucket, Key=key)
            with open(dest_path, 'wb') as f:
                for chunk in response['Body'].iter_chunks(MULTIPART_CHUNK_SIZE):
                    f.write(chunk)
            return dest_path

        except ClientError as e:
            error_code = _error_code(e)
            if error_code in ('NoSuchKey', '404', 'NotFound'):
                raise ObjectNotFound(f"Backup object not found: s3://{bucket}/{key}")
            raise StorageUnavailable(f"S3 download failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageUnavailable(f"S3 download failed: {e}")
        except OSError as e:
            raise StorageUnavailable(f"Failed to write downloaded archive: {e}")

    def delete(self, location: Dict[str, str]):
        """
        Delete an archive from S3.

        Args:
            location: Storage location dict ({'bucket', 'key'})

        Raises:
            StorageUnavailable: If deletion fails
        """
        bucket = location.get('bucket') or self.bucket_name
        key = location['key']

        try:
            self.s3_client.delete_object(Bucket=bucket, Key=key)
            logger.info(f"Deleted s3://{bucket}/{key}")
        except ClientError as e:
            raise StorageUnavailable(f"S3 delete failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageUnavailable(f"S3 delete failed: {e}")

    def list_objects(self, prefix: str) -> list:
        """
        List objects in S3 with given prefix.

        Args:
            prefix: S3 key prefix to filter by

        Returns:
            List of dicts with 'Key', 'LastModified', and 'Size' keys

        Raises:
            StorageUnavailable: If listing fails
        """
        try:
            objects = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=prefix):
                for obj in page.get('Contents', []):
                    objects.append({
                        'Key': obj['Key'],
                        'LastModified': obj['LastModified'],
                        'Size': obj['Size']
                    })

            return objects

        except ClientError as e:
            raise StorageUnavailable(f"S3 list failed ({_error_code(e)}): {e}")
        except BotoCoreError as e:
            raise StorageUnavailable(f"S3 list failed: {e}")

    def list_year(self, year: int) -> list:
        """List every archive stored under a given year."""
        return self.list_objects(f"{KEY_PREFIX}/{year}/")

    def generate_download_url(self, location: Dict[str, str], expires_in: int = 3600) -> str:
        """
        Generate a time-limited signed GET URL for an archive.

        Raises:
            StorageUnavailable: If signing fails
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': location.get('bucket') or self.bucket_name,
                    'Key': location['key']
                },
                ExpiresIn=expires_in
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageUnavailable(f"Failed to sign download URL: {e}")

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageUnavailable: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageUnavailable(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageUnavailable(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageUnavailable(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageUnavailable(f"Failed to connect to S3: {e}")
