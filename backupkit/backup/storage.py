"""
Backup destinations.

Supports:
- LocalDestination: Copy into a local directory
- S3Destination: Upload to AWS S3 (or any S3-compatible endpoint)
- SFTPDestination: Upload to a remote host via SSH/SFTP

Every destination stores the archive as {backup_name}/{filename}.
"""

import os
import copy
import shutil
import posixpath
from pathlib import Path
from typing import Optional

import boto3
import paramiko
from botocore.exceptions import ClientError, BotoCoreError
from paramiko import SSHClient, AutoAddPolicy


MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB
PRESIGNED_URL_EXPIRY = 20 * 60


class DestinationWriteFailure(Exception):
    """Raised when copying an archive to a destination fails."""
    pass


class BackupDestination:
    """
    Base class for a named storage target.

    Args:
        disk_name: Unique name used to select the destination (only_backup_to)
        backup_name: Folder/prefix the archive is stored under
        log_archive: Append monthly/weekly/full to backup_name depending on the date filter
    """

    filesystem_type = 'remote'

    def __init__(self, disk_name: str, backup_name: str = '', log_archive: bool = False):
        self.disk_name = disk_name
        self.backup_name = backup_name.strip('/')
        self.log_archive = log_archive

    def __repr__(self):
        return f'<{self.__class__.__name__} disk={self.disk_name} backup_name={self.backup_name}>'

    def with_filter_suffix(self, window) -> 'BackupDestination':
        """
        Apply the destination naming policy for a run.

        Returns:
            self for regular destinations; a copy with the filter suffix
            appended to backup_name for log-archive destinations
        """
        if not self.log_archive:
            return self

        restricted = copy.copy(self)
        restricted.backup_name = '/'.join(part for part in (self.backup_name, window.suffix) if part)
        return restricted

    def storage_path(self, local_path: str) -> str:
        filename = os.path.basename(local_path)
        return posixpath.join(self.backup_name, filename) if self.backup_name else filename

    def backup_directory_path(self) -> Optional[str]:
        """Local directory receiving archives; None for remote destinations."""
        return None

    def write(self, local_path: str) -> str:
        """
        Copy the archive to this destination.

        Returns:
            Location of the stored archive

        Raises:
            DestinationWriteFailure: If the copy fails
        """
        raise NotImplementedError


class LocalDestination(BackupDestination):
    """
    Stores archives in a local directory:
    {root}/{backup_name}/{filename}
    """

    filesystem_type = 'local'

    def __init__(self, disk_name: str, root: str, backup_name: str = '', log_archive: bool = False):
        super().__init__(disk_name, backup_name, log_archive)
        self.root = Path(root).expanduser()

    def backup_directory_path(self) -> str:
        return str(self.root / self.backup_name) if self.backup_name else str(self.root)

    def write(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise DestinationWriteFailure(f"Source file not found: {local_path}")

        dest_path = self.root / self.storage_path(local_path)

        try:
            # Create directory structure
            dest_path.parent.mkdir(parents=True, exist_ok=True)

            # Copy file
            shutil.copy2(local_path, dest_path)

            return str(dest_path)

        except PermissionError as e:
            raise DestinationWriteFailure(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            raise DestinationWriteFailure(f"Failed to store locally: {e}")


class S3Destination(BackupDestination):
    """
    Uploads archives to S3 under the key {backup_name}/{filename}.

    Without explicit keys boto3's default credential chain is used.
    """

    def __init__(
        self,
        disk_name: str,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        endpoint_url: Optional[str] = None,
        backup_name: str = '',
        log_archive: bool = False
    ):
        super().__init__(disk_name, backup_name, log_archive)
        self.bucket_name = bucket_name
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except Exception as e:
            raise DestinationWriteFailure(f"Failed to initialize S3 client: {e}")

    def write(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise DestinationWriteFailure(f"Local file not found: {local_path}")

        s3_key = self.storage_path(local_path)

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for files larger than 100MB
            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise DestinationWriteFailure(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise DestinationWriteFailure(f"S3 upload failed: {e}")
        except Exception as e:
            raise DestinationWriteFailure(f"Failed to upload to S3: {e}")

    def presigned_url(self, s3_key: str, expires_in: int = PRESIGNED_URL_EXPIRY) -> str:
        """
        Generate a temporary download link for a stored archive.

        Args:
            s3_key: Key returned by write()
            expires_in: Link lifetime in seconds (default 20 minutes)

        Raises:
            DestinationWriteFailure: If the URL cannot be signed
        """
        try:
            return self.s3_client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket_name, 'Key': s3_key},
                ExpiresIn=expires_in
            )
        except (ClientError, BotoCoreError) as e:
            raise DestinationWriteFailure(f"Failed to generate presigned URL for {s3_key}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """Upload a large file in 10MB parts, aborting the upload on error."""
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
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
            except (ClientError, BotoCoreError):
                pass
            raise


class SFTPDestination(BackupDestination):
    """
    Uploads archives over SFTP to {remote_root}/{backup_name}/{filename}.
    """

    def __init__(
        self,
        disk_name: str,
        host: str,
        username: str,
        remote_root: str = '.',
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        backup_name: str = '',
        log_archive: bool = False
    ):
        super().__init__(disk_name, backup_name, log_archive)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key_path = private_key
        self.remote_root = remote_root.rstrip('/') or '/'

    def _connect(self):
        """
        Establish SSH connection.

        Returns:
            (ssh_client, sftp_client)

        Raises:
            DestinationWriteFailure: If connection fails
        """
        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': 30
        }

        # Use password or private key
        if self.password:
            connect_kwargs['password'] = self.password
        elif self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise DestinationWriteFailure(f"Private key not found: {self.private_key_path}")
            connect_kwargs['key_filename'] = str(key_path)
        else:
            raise DestinationWriteFailure("Either password or private_key must be provided")

        ssh_client = SSHClient()
        ssh_client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            ssh_client.connect(**connect_kwargs)
            return ssh_client, ssh_client.open_sftp()
        except paramiko.AuthenticationException as e:
            ssh_client.close()
            raise DestinationWriteFailure(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            ssh_client.close()
            raise DestinationWriteFailure(f"SSH connection failed: {e}")
        except Exception as e:
            ssh_client.close()
            raise DestinationWriteFailure(f"Failed to connect to {self.host}: {e}")

    def _makedirs(self, sftp_client, remote_directory: str):
        """Create remote_directory and its parents when missing."""
        current = '/' if remote_directory.startswith('/') else ''
        for part in remote_directory.strip('/').split('/'):
            if not part or part == '.':
                continue
            current = posixpath.join(current, part) if current else part
            try:
                sftp_client.stat(current)
            except FileNotFoundError:
                sftp_client.mkdir(current)

    def write(self, local_path: str) -> str:
        if not os.path.exists(local_path):
            raise DestinationWriteFailure(f"Local file not found: {local_path}")

        remote_path = posixpath.join(self.remote_root, self.storage_path(local_path))
        ssh_client, sftp_client = self._connect()

        try:
            self._makedirs(sftp_client, posixpath.dirname(remote_path))
            sftp_client.put(local_path, remote_path)
            return remote_path
        except PermissionError as e:
            raise DestinationWriteFailure(f"Permission denied writing {remote_path}: {e}")
        except Exception as e:
            raise DestinationWriteFailure(f"Failed to upload {remote_path}: {e}")
        finally:
            sftp_client.close()
            ssh_client.close()


DESTINATIONS = {
    'local': LocalDestination,
    's3': S3Destination,
    'sftp': SFTPDestination,
}


def create_destination(kind: str, **settings) -> BackupDestination:
    """
    Factory function to create a destination.

    Args:
        kind: 'local', 's3' or 'sftp'
        **settings: Keyword arguments for the destination

    Raises:
        ValueError: If kind is invalid
    """
    if kind not in DESTINATIONS:
        raise ValueError(
            f"Invalid destination type: {kind}. "
            f"Valid options: {list(DESTINATIONS.keys())}"
        )
    return DESTINATIONS[kind](**settings)
